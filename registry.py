"""
Registry lookups for freshdock: image references, pull tokens, manifest
digests and the update decision built on top of them.

Only anonymous pulls from Docker Hub are supported.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)


DEFAULT_REGISTRY_URL = "https://registry.hub.docker.com"
DEFAULT_AUTH_URL = "https://auth.docker.io/token"
DEFAULT_AUTH_SERVICE = "registry.docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"
MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"

RETRY_COUNT = 3
REQUEST_TIMEOUT = (3, 5)  # connect, read seconds per attempt

HTTP_TOO_MANY_REQUESTS = 429


class RegistryError(Exception):
    """Base class for registry lookup failures."""


class AuthError(RegistryError):
    """No usable pull token could be obtained."""


class NetworkError(RegistryError):
    """The manifest request failed at the transport level."""


class RateLimitError(RegistryError):
    """The registry is throttling us; the whole run has to stop."""


class UpdateOutcome(enum.Enum):
    NOT_NEEDED = "not_needed"
    UPDATE_AVAILABLE = "update_available"
    APPLIED = "applied"
    FAILED = "failed"
    AUTH_OR_NETWORK_ERROR = "auth_or_network_error"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class ImageReference:
    """Repository plus tag of a running image."""
    repository: str
    tag: str = DEFAULT_TAG

    @classmethod
    def parse(cls, text: str) -> 'ImageReference':
        """
        Parse an ``image[:tag][@digest]`` string.

        The tag is only split off when the colon sits after the last slash,
        so ``localhost:5000/app`` keeps its port.
        """
        at_pos = text.find('@')
        if at_pos != -1:
            text = text[:at_pos]

        last_slash = text.rfind('/')
        last_colon = text.rfind(':')
        if last_colon > last_slash:
            return cls(text[:last_colon], text[last_colon + 1:] or DEFAULT_TAG)
        return cls(text, DEFAULT_TAG)

    def normalized(self) -> 'ImageReference':
        """Official images live under the ``library/`` namespace."""
        repository = self.repository
        if '/' not in repository:
            repository = f"{DEFAULT_NAMESPACE}/{repository}"
        return ImageReference(repository, self.tag or DEFAULT_TAG)

    def __str__(self) -> str:
        return f"{self.repository}:{self.tag}"


@dataclass
class DigestPair:
    local: str
    remote: str

    @property
    def differs(self) -> bool:
        return bool(self.remote) and self.remote != self.local


def build_session(total: int = RETRY_COUNT) -> requests.Session:
    """
    Session with bounded retries.

    429 is never retried, with or without Retry-After, so callers see it at once.
    """
    retry = Retry(
        total=total,
        connect=total,
        read=total,
        backoff_factor=0.5,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=frozenset({"GET", "POST"}),
        raise_on_status=False,
        respect_retry_after_header=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session = requests.Session()
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers.update({"User-Agent": "freshdock"})
    return session


class RegistryClient:
    def __init__(self, registry_url: str = DEFAULT_REGISTRY_URL,
                 auth_url: str = DEFAULT_AUTH_URL,
                 service: str = DEFAULT_AUTH_SERVICE,
                 session: Optional[requests.Session] = None):
        self.registry_url = registry_url.rstrip('/')
        self.auth_url = auth_url
        self.service = service
        self._session = session or build_session()

    def fetch_token(self, repository: str) -> str:
        """
        Request an anonymous pull token scoped to ``repository``.

        Raises:
            AuthError: on any request failure or an empty token
        """
        params = {
            'scope': f"repository:{repository}:pull",
            'service': self.service,
        }
        try:
            response = self._session.get(self.auth_url, params=params, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            token = response.json().get('token')
        except (requests.RequestException, ValueError) as e:
            raise AuthError(f"Error getting token for {repository}: {e}") from e

        if not token:
            raise AuthError(f"Empty token returned for {repository}")
        return token

    def fetch_manifest_digest(self, repository: str, tag: str, token: str) -> Tuple[str, int]:
        """
        Fetch the config digest of ``repository:tag``.

        Returns:
            Tuple of (digest, http_status). The digest is empty when the
            response is not a 2xx manifest with ``config.digest``.

        Raises:
            NetworkError: when the request could not be completed
        """
        url = f"{self.registry_url}/v2/{repository}/manifests/{tag}"
        headers = {
            'Accept': MANIFEST_V2,
            'Authorization': f'Bearer {token}',
        }
        try:
            response = self._session.get(url, headers=headers, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise NetworkError(f"Error getting manifest for {repository}:{tag}: {e}") from e

        status = response.status_code
        if not response.ok:
            return '', status

        try:
            config = response.json().get('config') or {}
            digest = config.get('digest') or ''
        except (ValueError, AttributeError):
            digest = ''
        return digest, status


class UpdateDecision:
    """Compares a local image digest with the registry's current one."""

    def __init__(self, client: RegistryClient):
        self.client = client

    def needs_update(self, image: ImageReference, local_digest: str) -> UpdateOutcome:
        ref = image.normalized()

        try:
            token = self.client.fetch_token(ref.repository)
            remote, status = self.client.fetch_manifest_digest(ref.repository, ref.tag, token)
        except RegistryError as e:
            logger.error(str(e))
            return UpdateOutcome.AUTH_OR_NETWORK_ERROR

        if status == HTTP_TOO_MANY_REQUESTS:
            return UpdateOutcome.RATE_LIMITED

        digests = DigestPair(local=local_digest, remote=remote)
        if not digests.remote:
            logger.error(f"Could not resolve remote digest for {ref} (HTTP {status})")
            return UpdateOutcome.AUTH_OR_NETWORK_ERROR

        logger.debug(f"Local digest {digests.local or '-'}, remote digest {digests.remote}")
        if digests.differs:
            return UpdateOutcome.UPDATE_AVAILABLE
        return UpdateOutcome.NOT_NEEDED
