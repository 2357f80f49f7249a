#!/usr/bin/env python3
"""
freshdock: keep docker-compose managed containers on their newest image.

For every running container the local image ID is compared with the config
digest the registry currently serves for the same tag. When they differ the
owning compose project is pulled and brought back up, the operator is told
via Gotify, and unused images are pruned once the pass is over.
"""

__version__ = "1.0.0"

import argparse
import json
import logging
import os
import platform
import shutil
import socket as _socket
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import jsonschema
import requests
from requests.adapters import HTTPAdapter as _HTTPAdapter
from urllib3.connection import HTTPConnection as _HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool as _HTTPConnectionPool

from notify import GotifyNotifier, PRIORITY_HIGH, PRIORITY_NORMAL
from registry import (ImageReference, RateLimitError, RegistryClient,
                      UpdateDecision, UpdateOutcome)
from runlog import prepare_log, setup_logging

IS_WINDOWS = platform.system() == 'Windows'

# Constants
DOCKER_SOCKET_PATH = os.environ.get('DOCKER_SOCKET', '/var/run/docker.sock')
COMPOSE_WORKING_DIR_LABEL = 'com.docker.compose.project.working_dir'
DEFAULT_LOG_FILE = Path(__file__).resolve().parent / 'freshdock.log'
REQUEST_TIMEOUT = 30
PRUNE_TIMEOUT = 300
COMPOSE_TIMEOUT = 900
FAIL_MESSAGE = "Docker API is throttling. Try again later."

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "gotify_domain": {"type": "string"},
        "gotify_token": {"type": "string"},
        "compose_command": {
            "type": "array",
            "items": {"type": "string"},
            "minItems": 1
        },
        "log_file": {"type": "string"},
        "prune": {"type": "boolean"}
    },
    "additionalProperties": False
}


class PreflightError(Exception):
    """The host is not fit to run an update pass."""


class ApplyError(Exception):
    """Pulling or recreating a compose project failed."""


# ---------------------------------------------------------------------------
# Docker Engine socket client
# ---------------------------------------------------------------------------

class _UnixSocketConnection(_HTTPConnection):
    """HTTPConnection that connects via a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def connect(self):
        sock = _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketPool(_HTTPConnectionPool):
    """Connection pool backed by a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def _new_conn(self):
        return _UnixSocketConnection(self._socket_path)


class _UnixSocketAdapter(_HTTPAdapter):
    """requests adapter that routes all requests through a Unix socket."""

    def __init__(self, socket_path: str):
        self._socket_path = socket_path
        super().__init__()

    def get_connection(self, url: str, proxies=None):
        return _UnixSocketPool(self._socket_path)

    # Needed in requests >= 2.32 / urllib3 >= 2.x
    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return _UnixSocketPool(self._socket_path)


class DockerClient:
    """Just enough of the Docker Engine API for listing, inspecting and pruning."""

    def __init__(self, socket_path: str = DOCKER_SOCKET_PATH):
        self._session = requests.Session()
        self._session.mount('http+unix://', _UnixSocketAdapter(socket_path))

    def _url(self, path: str) -> str:
        return f'http+unix://docker{path}'

    def get(self, path: str, timeout: float = REQUEST_TIMEOUT, **kwargs) -> requests.Response:
        r = self._session.get(self._url(path), timeout=timeout, **kwargs)
        r.raise_for_status()
        return r

    def post(self, path: str, timeout: float = REQUEST_TIMEOUT, **kwargs) -> requests.Response:
        r = self._session.post(self._url(path), timeout=timeout, **kwargs)
        r.raise_for_status()
        return r


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------

@dataclass
class ContainerRecord:
    """One running container as seen at the start of a run."""
    container_id: str
    image: ImageReference
    project_directory: str = ''
    local_digest: str = ''


@dataclass
class Inventory:
    """
    Lookup tables for one run.

    Both maps are keyed by repository without the tag, so when two tags of
    one repository are running the container listed last wins.
    """
    image_to_project_directory: Dict[str, str] = field(default_factory=dict)
    image_to_local_digest: Dict[str, str] = field(default_factory=dict)
    running_images: List[ImageReference] = field(default_factory=list)

    @classmethod
    def from_records(cls, records: List[ContainerRecord]) -> 'Inventory':
        inventory = cls()
        for record in records:
            repository = record.image.repository
            inventory.image_to_project_directory[repository] = record.project_directory
            inventory.image_to_local_digest[repository] = record.local_digest
            if record.image not in inventory.running_images:
                inventory.running_images.append(record.image)
        return inventory

    def project_directory(self, image: ImageReference) -> str:
        return self.image_to_project_directory.get(image.repository, '')

    def local_digest(self, image: ImageReference) -> str:
        return self.image_to_local_digest.get(image.repository, '')


class ContainerInventory:
    """Builds an :class:`Inventory` from the live Engine API state."""

    def __init__(self, docker: DockerClient):
        self._docker = docker
        self.logger = logging.getLogger('freshdock.inventory')

    def _inspect(self, container_id: str) -> Tuple[str, str]:
        """Return (compose working dir, local image ID); blanks when unknown."""
        try:
            info = self._docker.get(f'/containers/{container_id}/json').json()
        except requests.RequestException as e:
            self.logger.error(f"Error inspecting container {container_id[:12]}: {e}")
            return '', ''
        except ValueError as e:
            self.logger.error(f"Error parsing inspect data for {container_id[:12]}: {e}")
            return '', ''

        labels = (info.get('Config') or {}).get('Labels') or {}
        return labels.get(COMPOSE_WORKING_DIR_LABEL, ''), info.get('Image', '')

    def build(self) -> Inventory:
        """
        List running containers and collect what the rollout needs.

        Raises:
            requests.RequestException: when the container listing fails
        """
        containers = self._docker.get('/containers/json').json()

        records = []
        for container in containers:
            container_id = container.get('Id', '')
            image_text = container.get('Image', '')
            if not image_text or image_text.startswith('sha256:'):
                # the tag was moved to another image; nothing to compare against
                self.logger.warning(f"Skipping {container_id[:12]}: no image reference ({image_text or 'empty'})")
                continue
            image = ImageReference.parse(image_text)
            project_directory, local_digest = self._inspect(container_id)
            if not project_directory:
                self.logger.debug(f"{container_id[:12]} ({image}) has no compose project")

            records.append(ContainerRecord(container_id, image, project_directory, local_digest))

        inventory = Inventory.from_records(records)
        self.logger.debug(f"Found {len(records)} running container(s), "
                          f"{len(inventory.running_images)} image(s)")
        return inventory


# ---------------------------------------------------------------------------
# Rollout
# ---------------------------------------------------------------------------

def detect_compose_command() -> List[str]:
    """Use the docker compose plugin when it answers, else standalone docker-compose."""
    if shutil.which('docker'):
        try:
            proc = subprocess.run(['docker', 'compose', 'version'], stdout=subprocess.DEVNULL,
                                  stderr=subprocess.DEVNULL, timeout=30)
            if proc.returncode == 0:
                return ['docker', 'compose']
        except (OSError, subprocess.TimeoutExpired):
            pass
    if shutil.which('docker-compose'):
        return ['docker-compose']
    return ['docker', 'compose']


class ComposeRunner:
    """Runs ``pull`` then ``up -d`` for one compose project directory."""

    STEPS = (['pull'], ['up', '-d'])

    def __init__(self, command: Optional[List[str]] = None, timeout: int = COMPOSE_TIMEOUT):
        self.command = list(command or detect_compose_command())
        self.timeout = timeout
        self.logger = logging.getLogger('freshdock.compose')

    def apply(self, project_directory: str) -> None:
        """
        Raises:
            ApplyError: if the directory is unusable or a step fails
        """
        if not project_directory:
            raise ApplyError("No compose project directory recorded for this container")

        path = Path(project_directory)
        if not path.is_dir() or not os.access(path, os.R_OK | os.X_OK):
            raise ApplyError(f"Compose project directory {project_directory} is not accessible")

        for step in self.STEPS:
            self._run(step, path)

    def _run(self, step: List[str], cwd: Path) -> None:
        cmd = self.command + step
        self.logger.debug(f"Running {' '.join(cmd)} in {cwd}")
        try:
            proc = subprocess.run(cmd, cwd=str(cwd), stdout=subprocess.PIPE,
                                  stderr=subprocess.STDOUT, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise ApplyError(f"{' '.join(cmd)} timed out after {e.timeout}s") from e
        except OSError as e:
            raise ApplyError(f"Could not run {' '.join(cmd)}: {e}") from e

        if proc.stdout:
            self.logger.debug(proc.stdout.rstrip())
        if proc.returncode != 0:
            raise ApplyError(f"{' '.join(cmd)} returned {proc.returncode}")


@dataclass
class RolloutResult:
    """What happened to each image during one pass."""
    applied: List[ImageReference] = field(default_factory=list)
    failed: List[ImageReference] = field(default_factory=list)
    skipped: List[ImageReference] = field(default_factory=list)
    up_to_date: List[ImageReference] = field(default_factory=list)
    pending: List[ImageReference] = field(default_factory=list)

    def record(self, image: ImageReference, outcome: UpdateOutcome) -> None:
        {
            UpdateOutcome.APPLIED: self.applied,
            UpdateOutcome.FAILED: self.failed,
            UpdateOutcome.AUTH_OR_NETWORK_ERROR: self.skipped,
            UpdateOutcome.NOT_NEEDED: self.up_to_date,
            UpdateOutcome.UPDATE_AVAILABLE: self.pending,
        }[outcome].append(image)

    @property
    def updated(self) -> bool:
        return bool(self.applied)


class RolloutController:
    def __init__(self, decision: UpdateDecision, compose: ComposeRunner,
                 notifier: GotifyNotifier, dry_run: bool = False):
        self.decision = decision
        self.compose = compose
        self.notifier = notifier
        self.dry_run = dry_run
        self.logger = logging.getLogger('freshdock.rollout')

    def run(self, inventory: Inventory) -> RolloutResult:
        """
        Check every running image in inventory order and roll out updates.

        Raises:
            RateLimitError: as soon as the registry answers 429
        """
        result = RolloutResult()
        for image in inventory.running_images:
            self._process(image, inventory, result)
        return result

    def _process(self, image: ImageReference, inventory: Inventory, result: RolloutResult) -> None:
        name = image.repository
        self.logger.info(f"[ {name} ]", extra={'category': 'Checking'})

        outcome = self.decision.needs_update(image, inventory.local_digest(image))

        if outcome is UpdateOutcome.RATE_LIMITED:
            self.notifier.notify(FAIL_MESSAGE, PRIORITY_HIGH)
            self.logger.error(FAIL_MESSAGE)
            raise RateLimitError(FAIL_MESSAGE)

        if outcome is UpdateOutcome.AUTH_OR_NETWORK_ERROR:
            result.record(image, outcome)
            return

        if outcome is UpdateOutcome.NOT_NEEDED:
            self.logger.debug(f"{image} is up to date")
            result.record(image, outcome)
            return

        self.logger.info("Updated image available.")

        project_directory = inventory.project_directory(image)
        if self.dry_run:
            self.logger.info(f"[DRY RUN] Would pull and recreate {image} in {project_directory or '?'}")
            result.record(image, outcome)
            return

        try:
            self.compose.apply(project_directory)
        except ApplyError as e:
            self.logger.error(str(e))
            self.notifier.notify(f"[ {name} ] failed to update! Please investigate manually.",
                                 PRIORITY_HIGH)
            self.logger.error("Couldn't update container. Something went wrong.")
            result.record(image, UpdateOutcome.FAILED)
            return

        result.record(image, UpdateOutcome.APPLIED)
        self.notifier.notify(f"[ {name} ] was updated to {image.tag}!", PRIORITY_NORMAL)
        self.logger.info("Container updated.")


class Housekeeping:
    """Prunes stopped containers and unused images after a pass that applied something."""

    def __init__(self, docker: DockerClient):
        self._docker = docker
        self.logger = logging.getLogger('freshdock.housekeeping')

    def run(self, result: RolloutResult) -> bool:
        """Returns True when a prune was attempted."""
        if not result.applied:
            return False

        self.logger.info("Cleaning up.")
        try:
            containers = self._docker.post('/containers/prune', timeout=PRUNE_TIMEOUT).json()
            images = self._docker.post(
                '/images/prune',
                params={'filters': json.dumps({'dangling': ['false']})},
                timeout=PRUNE_TIMEOUT,
            ).json()
        except (requests.RequestException, ValueError) as e:
            self.logger.warning(f"Error during cleanup: {e}")
            return True

        reclaimed = (containers.get('SpaceReclaimed') or 0) + (images.get('SpaceReclaimed') or 0)
        removed = len(containers.get('ContainersDeleted') or [])
        deleted = len(images.get('ImagesDeleted') or [])
        self.logger.info(f"Removed {removed} container(s) and {deleted} image layer(s), "
                         f"reclaimed {reclaimed / (1024 * 1024):.1f} MB")
        return True


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

def load_config(config_file: Optional[str]) -> Dict[str, Any]:
    """Load and validate the optional JSON configuration file."""
    if not config_file:
        return {}

    with open(config_file, 'r') as f:
        config = json.load(f)

    jsonschema.validate(config, CONFIG_SCHEMA)
    return config


def apply_env_overrides(config: Dict[str, Any], environ=os.environ) -> Dict[str, Any]:
    """GOTIFY_DOMAIN / GOTIFY_TOKEN from the environment win over the file."""
    merged = dict(config)
    for key in ('gotify_domain', 'gotify_token'):
        value = environ.get(key.upper())
        if value:
            merged[key] = value
    return merged


def preflight(compose_command: List[str], socket_path: str = DOCKER_SOCKET_PATH) -> None:
    """
    Make sure the host can run an update pass.

    Raises:
        PreflightError: describing the first failed check
    """
    if IS_WINDOWS:
        raise PreflightError("freshdock requires a Linux or Unix host.")

    if os.geteuid() != 0:
        raise PreflightError("freshdock must be run as root.")

    if not os.path.exists(socket_path):
        raise PreflightError(f"Docker socket {socket_path} not found. Is Docker running?")

    executable = compose_command[0]
    if not shutil.which(executable):
        raise PreflightError(f"{executable} is required but not installed.")


class FreshDock:
    def __init__(self, config: Optional[Dict[str, Any]] = None, dry_run: bool = False,
                 prune: Optional[bool] = None, docker: Optional[DockerClient] = None,
                 registry: Optional[RegistryClient] = None,
                 notifier: Optional[GotifyNotifier] = None,
                 compose: Optional[ComposeRunner] = None):
        """
        Wire together one update pass.

        Args:
            config: Validated configuration dict
            dry_run: If True, only log what would be updated
            prune: Override the config's ``prune`` setting
            docker, registry, notifier, compose: Collaborators, built from
                config when omitted
        """
        self.config = config or {}
        self.dry_run = dry_run
        self.prune = self.config.get('prune', True) if prune is None else prune
        self.logger = logging.getLogger('freshdock')

        self._docker = docker or DockerClient()
        self.notifier = notifier or GotifyNotifier(self.config.get('gotify_domain'),
                                                   self.config.get('gotify_token'))
        self.inventory = ContainerInventory(self._docker)
        self.controller = RolloutController(
            UpdateDecision(registry or RegistryClient()),
            compose or ComposeRunner(self.config.get('compose_command')),
            self.notifier,
            dry_run=dry_run,
        )
        self.housekeeping = Housekeeping(self._docker)

    def run(self) -> RolloutResult:
        if self.dry_run:
            self.logger.info("=== DRY RUN MODE ===")

        inventory = self.inventory.build()
        result = self.controller.run(inventory)

        if self.dry_run or not self.prune:
            if result.applied:
                self.logger.info("Skipping cleanup.")
        else:
            self.housekeeping.run(result)

        self.logger.debug(
            f"applied={len(result.applied)} failed={len(result.failed)} "
            f"skipped={len(result.skipped)} up_to_date={len(result.up_to_date)}"
        )
        return result


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Update docker-compose managed containers when their image changes upstream'
    )
    parser.add_argument(
        'config',
        nargs='?',
        default=os.environ.get('FRESHDOCK_CONFIG'),
        help='Optional path to configuration JSON file (env: FRESHDOCK_CONFIG)'
    )
    parser.add_argument(
        '--log-file',
        default=os.environ.get('FRESHDOCK_LOG'),
        help=f'Path to run log (env: FRESHDOCK_LOG, default: {DEFAULT_LOG_FILE})'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=os.environ.get('DRY_RUN', '').lower() == 'true',
        help='Check for updates without pulling or recreating anything (env: DRY_RUN)'
    )
    parser.add_argument(
        '--no-prune',
        action='store_true',
        help='Do not prune unused images and containers after updating'
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip the root, socket and dependency checks'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    args = parser.parse_args(argv)

    try:
        config = apply_env_overrides(load_config(args.config))
    except (OSError, json.JSONDecodeError, jsonschema.ValidationError) as e:
        logging.error(f"Error loading config: {e}")
        sys.exit(1)

    compose = ComposeRunner(config.get('compose_command'))

    if not args.skip_preflight:
        try:
            preflight(compose.command)
        except PreflightError as e:
            print(e, file=sys.stderr)
            sys.exit(1)

    log_file = args.log_file or config.get('log_file') or DEFAULT_LOG_FILE
    prepare_log(log_file)
    logger = setup_logging(log_file, args.log_level)

    try:
        updater = FreshDock(config, dry_run=args.dry_run,
                            prune=False if args.no_prune else None, compose=compose)
        updater.run()
    except RateLimitError:
        sys.exit(1)
    except requests.RequestException as e:
        logger.error(f"Could not list running containers: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
