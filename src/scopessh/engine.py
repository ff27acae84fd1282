"""
SSH engine handle.

An SSHEngine holds the client-side material shared by every session it
creates: at most one identity (a loaded private key) and at most one
known_hosts trust store, plus the event emitter. Building one is purely
local; no network I/O happens until a session connects.

Usage:
    engine = create_engine(known_hosts_location="~/.ssh/known_hosts")
    session = engine.get_session("deploy", "build.example.com", 22)
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable

import asyncssh

from scopessh.errors import KeyLoadError, KnownHostsLoadError
from scopessh.events import EventCollector, EventEmitter
from scopessh.resolver import (
    DEFAULT_SSH_PORT,
    default_key_location,
    default_known_hosts_location,
    resolve_path,
)
from scopessh.session import Session

logger = logging.getLogger(__name__)

# Reasons create_engine logs and skips instead of failing the whole engine
SKIPPABLE_KEY_ERRORS = frozenset({"passphrase_required", "permission_denied", "read_error"})


def load_private_key(key_path: Path, passphrase: str | None = None) -> asyncssh.SSHKey:
    """
    Load a private key from file.

    Raises:
        KeyLoadError: If the key is unreadable, malformed, or the passphrase is wrong
    """
    if not key_path.exists():
        raise KeyLoadError(
            f"Private key file not found: {key_path}",
            key_path=str(key_path),
            reason="not_found",
        )
    if not os.access(key_path, os.R_OK):
        raise KeyLoadError(
            f"Private key file not readable: {key_path}",
            key_path=str(key_path),
            reason="permission_denied",
        )

    try:
        return asyncssh.read_private_key(str(key_path), passphrase=passphrase)
    except asyncssh.KeyImportError as e:
        error_msg = str(e).lower()
        if passphrase is None and "passphrase" in error_msg:
            reason = "passphrase_required"
        elif "passphrase" in error_msg or "decrypt" in error_msg:
            reason = "wrong_passphrase"
        elif "format" in error_msg or "invalid" in error_msg:
            reason = "invalid_format"
        else:
            reason = "import_error"
        raise KeyLoadError(
            f"Failed to load private key {key_path}: {e}",
            key_path=str(key_path),
            reason=reason,
        ) from e
    except OSError as e:
        raise KeyLoadError(
            f"Failed to read private key {key_path}: {e}",
            key_path=str(key_path),
            reason="read_error",
        ) from e
    except ValueError as e:
        raise KeyLoadError(
            f"Failed to load private key {key_path}: {e}",
            key_path=str(key_path),
            reason="invalid_format",
        ) from e


class SSHEngine:
    """
    Identity and trust-store holder that hands out sessions.

    Engines are reusable: any number of independent sessions may be created
    from one engine. Sessions and channels created from it are not.
    """

    def __init__(
        self,
        event_collector: EventCollector | None = None,
        event_log_path: Path | str | None = None,
    ) -> None:
        self._identities: list[asyncssh.SSHKey] = []
        self._identity_paths: list[Path] = []
        self._known_hosts: asyncssh.SSHKnownHosts | None = None
        self._known_hosts_path: Path | None = None
        self._emitter = EventEmitter(
            collector=event_collector,
            jsonl_path=event_log_path,
        )

    @property
    def identities(self) -> list[asyncssh.SSHKey]:
        """Loaded private keys, in registration order."""
        return list(self._identities)

    @property
    def identity_paths(self) -> list[Path]:
        return list(self._identity_paths)

    @property
    def known_hosts(self) -> asyncssh.SSHKnownHosts | None:
        """The loaded trust store, or None when none was set."""
        return self._known_hosts

    @property
    def known_hosts_path(self) -> Path | None:
        return self._known_hosts_path

    @property
    def emitter(self) -> EventEmitter:
        return self._emitter

    def add_identity(self, key_path: Path | str, passphrase: str | None = None) -> None:
        """Register a private key; a blank passphrase is treated as none."""
        key_path = Path(key_path)
        if passphrase is not None and not passphrase.strip():
            passphrase = None
        key = load_private_key(key_path, passphrase)
        self._identities.append(key)
        self._identity_paths.append(key_path)
        logger.debug("Registered identity %s", key_path)

    def set_known_hosts(self, known_hosts_path: Path | str) -> None:
        """Load a known_hosts file as the trusted host set."""
        known_hosts_path = Path(known_hosts_path)
        try:
            self._known_hosts = asyncssh.read_known_hosts(str(known_hosts_path))
        except (OSError, ValueError) as e:
            raise KnownHostsLoadError(
                f"Failed to load known_hosts {known_hosts_path}: {e}",
                path=str(known_hosts_path),
            ) from e
        self._known_hosts_path = known_hosts_path
        logger.debug("Loaded known_hosts %s", known_hosts_path)

    def get_session(self, username: str, host: str, port: int = DEFAULT_SSH_PORT) -> Session:
        """Return a new, unconnected session bound to this engine."""
        return Session(self, host=host, username=username, port=port)

    def close(self) -> None:
        """Release the event log file, if any."""
        self._emitter.close()


def create_engine(
    private_key_location: str | Path | None = None,
    passphrase: str = "",
    known_hosts_location: str | Path | None = None,
    customize: Callable[[SSHEngine], None] | None = None,
    event_collector: EventCollector | None = None,
    event_log_path: Path | str | None = None,
) -> SSHEngine:
    """
    Create an SSHEngine.

    A missing key or known_hosts file is not an error: the engine is simply
    built without an identity (password auth) or trust store. The same goes
    for an unreadable key, or an encrypted one given no passphrase: it is
    skipped with a warning.

    Args:
        private_key_location: Private key path (default ~/.ssh/id_rsa)
        passphrase: Key passphrase, attached only if non-blank
        known_hosts_location: known_hosts path (default ~/.ssh/known_hosts)
        customize: Hook invoked with the engine before it is returned
        event_collector: Optional in-memory event collector
        event_log_path: Optional JSONL event log path

    Raises:
        ConfigResolutionError: If a path override is malformed, a present
            key is malformed or its passphrase is wrong, or a present
            known_hosts file cannot be loaded
    """
    key_path = resolve_path(private_key_location, "private_key_location", default_key_location())
    known_hosts_path = resolve_path(
        known_hosts_location, "known_hosts_location", default_known_hosts_location(),
    )

    engine = SSHEngine(event_collector=event_collector, event_log_path=event_log_path)

    if key_path.exists():
        try:
            engine.add_identity(key_path, passphrase)
        except KeyLoadError as e:
            if e.reason not in SKIPPABLE_KEY_ERRORS:
                raise
            # Password auth must still work with a locked or unreadable default key
            logger.warning("Skipping identity %s: %s", key_path, e)
    else:
        logger.debug("No private key at %s, skipping identity", key_path)

    if known_hosts_path.exists():
        engine.set_known_hosts(known_hosts_path)
    else:
        logger.debug("No known_hosts at %s, skipping trust store", known_hosts_path)

    if customize is not None:
        customize(engine)
    return engine
