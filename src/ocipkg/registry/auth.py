"""
Registry authentication.

Credentials are looked up in the docker config, the podman auth file and
ocipkg's own auth.json (later files take precedence); explicit settings
override all of them. Bearer tokens obtained from a registry's token realm
are cached per (host, repository, action).
"""
from __future__ import annotations

import base64
import binascii
import enum
import json
import logging
import os
import re
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..errors import FormatError
from ..image_name import DEFAULT_DOMAIN
from ..settings import Settings, default_config_dir

__all__ = [
    "AuthState",
    "Challenge",
    "parse_challenge",
    "CredentialStore",
    "TokenCache",
    "PULL",
    "PUSH",
]

logger = logging.getLogger(__name__)

PULL = "pull"
PUSH = "pull,push"

# Keys docker writes for Docker Hub in config.json
_DOCKER_HUB_KEYS = ("https://index.docker.io/v1/", "index.docker.io", "docker.io", "registry-1.docker.io")

_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')

# Tokens are refreshed this many seconds before the registry says they expire
_EXPIRY_MARGIN_S = 30.0
_DEFAULT_TOKEN_LIFETIME_S = 60.0


class AuthState(enum.Enum):
    """Authentication state of one (host, repository, action) scope."""
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass(frozen=True)
class Challenge:
    """Parsed `WWW-Authenticate` header."""
    scheme: str
    params: Dict[str, str] = field(default_factory=dict)

    @property
    def realm(self) -> Optional[str]:
        return self.params.get("realm")

    @property
    def service(self) -> Optional[str]:
        return self.params.get("service")

    @property
    def scope(self) -> Optional[str]:
        return self.params.get("scope")


def parse_challenge(header: str) -> Optional[Challenge]:
    """
    Parse a `WWW-Authenticate` header value.

    Examples:
        >>> parse_challenge('Bearer realm="https://ghcr.io/token",service="ghcr.io"').realm
        'https://ghcr.io/token'

    Returns:
        Challenge, or None for an empty or unknown scheme
    """
    scheme, _, rest = header.strip().partition(" ")
    scheme = scheme.lower()
    if scheme not in ("bearer", "basic"):
        return None
    params = {m.group(1).lower(): m.group(2) for m in _PARAM_RE.finditer(rest)}
    return Challenge(scheme=scheme, params=params)


class CredentialStore:
    """
    Registry credentials from config files and settings.

    Lookup order (first hit wins): explicit username/password, ocipkg's own
    auth.json, the podman auth file, the docker config.
    """

    def __init__(self, username: Optional[str] = None, password: Optional[str] = None,
                 config_paths: Optional[Sequence[Path]] = None,
                 auth_file: Optional[Path] = None):
        """
        Args:
            username: Explicit username used for every registry
            password: Explicit password used for every registry
            config_paths: Read-only auth files, lowest precedence first
                (defaults to docker config then podman auth file)
            auth_file: ocipkg's own auth.json, written by `save`
        """
        self.username = username
        self.password = password
        self.config_paths = list(config_paths) if config_paths is not None else _default_config_paths()
        self.auth_file = auth_file or default_config_dir() / "auth.json"

    @classmethod
    def from_settings(cls, settings: Settings) -> CredentialStore:
        return cls(username=settings.registry_user, password=settings.registry_pass)

    def get_credentials(self, host: str) -> Optional[Tuple[str, str]]:
        """
        Get credentials for a registry host.

        Returns:
            (username, password) or None if not found

        Raises:
            FormatError: If an auth file exists but cannot be parsed
        """
        if self.username and self.password:
            return (self.username, self.password)

        for path in [self.auth_file] + list(reversed(self.config_paths)):
            auths = _load_auths(path)
            entry = _lookup(auths, host)
            if entry is not None:
                logger.debug(f"Using credentials for {host} from {path}")
                return _decode_entry(entry, path)
        return None

    def save(self, host: str, username: str, password: str) -> Path:
        """
        Store credentials for `host` in ocipkg's auth.json.

        The file is rewritten atomically and readable only by its owner.
        """
        auths = _load_auths(self.auth_file)
        token = base64.b64encode(f"{username}:{password}".encode()).decode()
        auths[host] = {"auth": token}

        self.auth_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.auth_file.parent, prefix=".auth.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump({"auths": auths}, f, indent=2, sort_keys=True)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.auth_file)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.info(f"Saved credentials for {host} to {self.auth_file}")
        return self.auth_file


def _default_config_paths() -> List[Path]:
    docker_dir = os.getenv("DOCKER_CONFIG")
    paths = [Path(docker_dir) / "config.json" if docker_dir else Path.home() / ".docker" / "config.json"]
    runtime_dir = os.getenv("XDG_RUNTIME_DIR")
    if runtime_dir:
        paths.append(Path(runtime_dir) / "containers" / "auth.json")
    return paths


def _load_auths(path: Path) -> Dict[str, dict]:
    if not path.is_file():
        return {}
    try:
        config = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise FormatError(f"Cannot read auth file {path}: {e}") from e
    auths = config.get("auths", {}) if isinstance(config, dict) else {}
    if not isinstance(auths, dict):
        raise FormatError(f"Invalid 'auths' section in {path}")
    return auths


def _lookup(auths: Dict[str, dict], host: str) -> Optional[dict]:
    candidates = list(_DOCKER_HUB_KEYS) if host == DEFAULT_DOMAIN else [host]
    for candidate in candidates:
        for key in (candidate, f"https://{candidate}", f"http://{candidate}"):
            if key in auths:
                return auths[key]
    return None


def _decode_entry(entry: dict, path: Path) -> Optional[Tuple[str, str]]:
    if "auth" in entry:
        try:
            decoded = base64.b64decode(entry["auth"], validate=True).decode()
        except (binascii.Error, UnicodeDecodeError) as e:
            raise FormatError(f"Invalid base64 auth entry in {path}: {e}") from e
        if ":" in decoded:
            username, password = decoded.split(":", 1)
            return (username, password)
    if "username" in entry and "password" in entry:
        return (entry["username"], entry["password"])
    return None


class TokenCache:
    """
    Thread-safe cache of Authorization header values.

    Keyed by (host, repository, action); entries carry an expiry time.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._tokens: Dict[Tuple[str, str, str], Tuple[str, float]] = {}
        self._states: Dict[Tuple[str, str, str], AuthState] = {}

    def get(self, key: Tuple[str, str, str]) -> Optional[str]:
        with self._lock:
            entry = self._tokens.get(key)
            if entry is None:
                return None
            header, expiry = entry
            if time.monotonic() >= expiry - _EXPIRY_MARGIN_S:
                del self._tokens[key]
                self._states[key] = AuthState.UNAUTHENTICATED
                return None
            return header

    def put(self, key: Tuple[str, str, str], header: str, expires_in: Optional[float] = None) -> None:
        lifetime = float(expires_in) if expires_in else _DEFAULT_TOKEN_LIFETIME_S
        with self._lock:
            self._tokens[key] = (header, time.monotonic() + max(lifetime, _EXPIRY_MARGIN_S + 1))
            self._states[key] = AuthState.AUTHENTICATED

    def state(self, key: Tuple[str, str, str]) -> AuthState:
        with self._lock:
            return self._states.get(key, AuthState.UNAUTHENTICATED)

    def set_state(self, key: Tuple[str, str, str], state: AuthState) -> None:
        with self._lock:
            self._states[key] = state
            if state is AuthState.FAILED:
                self._tokens.pop(key, None)
