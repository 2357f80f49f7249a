"""
Gotify notifications for freshdock.

Failures are always logged as warnings and never re-raised so that a broken
notification channel cannot interrupt the update cycle.
"""

import logging
from typing import Optional

import requests

from registry import build_session

logger = logging.getLogger(__name__)

_CONNECT_TIMEOUT = 5  # seconds
_READ_TIMEOUT = 10
_RETRIES = 5

TITLE = "freshdock"

PRIORITY_NORMAL = 2
PRIORITY_HIGH = 5

SKIP_MESSAGE = "Skipping notification. Set constants if using Gotify."


class GotifyNotifier:
    """POST messages to a Gotify server.

    With no domain or token configured every call is a logged no-op.
    """

    def __init__(self, domain: Optional[str] = None, token: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.domain = (domain or '').strip()
        self.token = (token or '').strip()
        self._session = session

    @property
    def configured(self) -> bool:
        return bool(self.domain and self.token)

    @property
    def endpoint(self) -> str:
        return f"https://{self.domain}/message"

    def notify(self, message: str, priority: int = PRIORITY_NORMAL) -> bool:
        """Send ``message`` with ``priority``. Returns True if it was delivered."""
        if not self.configured:
            logger.info(SKIP_MESSAGE)
            return False

        if self._session is None:
            self._session = build_session(total=_RETRIES)

        # Gotify reads multipart form fields; (None, value) avoids a filename
        fields = {
            'title': (None, TITLE),
            'message': (None, message),
            'priority': (None, str(priority)),
        }
        try:
            response = self._session.post(self.endpoint, params={'token': self.token},
                                          files=fields,
                                          timeout=(_CONNECT_TIMEOUT, _READ_TIMEOUT))
            response.raise_for_status()
            logger.debug("gotify: notification sent")
            return True
        except requests.RequestException as e:
            logger.warning("gotify: failed to send notification: %s", e)
            return False
        except Exception as e:
            logger.warning("gotify: unexpected error: %s", e)
            return False
