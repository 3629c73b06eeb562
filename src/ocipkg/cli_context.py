"""
CLI Context for managing application dependencies.

Provides a clean way to manage CLI-level dependencies like settings, the
registry session and the local store, avoiding global state and enabling
proper dependency injection.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .registry import RegistrySession
from .settings import Settings, create_settings_from_env
from .store import LocalStore


@dataclass
class CLIContext:
    """
    Shared context for CLI commands.

    The registry session and store are created on first access and reused
    for the rest of the command.
    """
    settings: Settings
    _session: Optional[RegistrySession] = None
    _store: Optional[LocalStore] = None

    @classmethod
    def from_env(cls) -> CLIContext:
        return cls(settings=create_settings_from_env())

    @property
    def session(self) -> RegistrySession:
        if self._session is None:
            self._session = RegistrySession(self.settings)
        return self._session

    @property
    def store(self) -> LocalStore:
        if self._store is None:
            self._store = LocalStore(settings=self.settings, session=self.session)
        return self._store

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
