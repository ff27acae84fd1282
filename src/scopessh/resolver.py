"""
Credential and session-config resolution.

Turns optional caller overrides into concrete connection values:
- default private key and known_hosts locations under ~/.ssh
- the session config map, always carrying a StrictHostKeyChecking entry
- ConnectionParams, the single record passed to the execution helpers

Nothing here touches the network; malformed values raise
ConfigResolutionError before any connection attempt.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from scopessh.errors import ConfigResolutionError
from scopessh.platform import get_default_key_path, get_known_hosts_path
from scopessh.validation import (
    validate_hostname,
    validate_path,
    validate_port,
    validate_timeout,
    validate_username,
)

DEFAULT_SSH_PORT = 22

HOST_KEY_CHECKING = "StrictHostKeyChecking"
HOST_KEY_CHECKING_VALUES = frozenset({"yes", "no", "ask", "accept-new"})

BASE_SESSION_CONFIG: Mapping[str, str] = {HOST_KEY_CHECKING: "no"}


def default_key_location() -> Path:
    """Return <home>/.ssh/id_rsa."""
    return get_default_key_path()


def default_known_hosts_location() -> Path:
    """Return <home>/.ssh/known_hosts."""
    return get_known_hosts_path()


def resolve_path(value: str | Path | None, field_name: str, default: Path) -> Path:
    """
    Resolve an optional path override.

    None falls back to ``default``; anything else must be a well-formed path.
    """
    if value is None:
        return default
    return validate_path(value, field_name)


def merge_session_config(properties: Mapping[str, str] | None = None) -> dict[str, str]:
    """
    Merge caller properties over the base session config.

    The base map only holds ``StrictHostKeyChecking=no``; caller keys win on
    conflict, so ``{"StrictHostKeyChecking": "yes"}`` re-enables checking.

    Raises:
        ConfigResolutionError: If a key or value is not a string, or the
            host key checking value is not one OpenSSH understands
    """
    config = dict(BASE_SESSION_CONFIG)
    for key, value in (properties or {}).items():
        if not isinstance(key, str) or not key:
            raise ConfigResolutionError(
                f"property names must be non-empty strings, got {key!r}",
                field_name="properties",
            )
        if not isinstance(value, str):
            raise ConfigResolutionError(
                f"property {key} must be a string, got {type(value).__name__}",
                field_name=key,
            )
        config[key] = value

    checking = config[HOST_KEY_CHECKING].strip().lower()
    if checking not in HOST_KEY_CHECKING_VALUES:
        raise ConfigResolutionError(
            f"{HOST_KEY_CHECKING} must be one of {sorted(HOST_KEY_CHECKING_VALUES)}, "
            f"got {config[HOST_KEY_CHECKING]!r}",
            field_name=HOST_KEY_CHECKING,
        )
    return config


@dataclass
class ConnectionParams:
    """
    Everything needed to reach one host, with the documented defaults.

    Attributes:
        host: SSH server hostname or IP address (required)
        username: Login name (required)
        password: Password; blank means key-based auth only
        private_key_location: Private key path (default ~/.ssh/id_rsa)
        passphrase: Private key passphrase; blank means unencrypted key
        known_hosts_location: known_hosts path (default ~/.ssh/known_hosts)
        port: SSH port (default 22)
        daemon: Close without awaiting the transport shutdown
        properties: Extra session config, overlaid on StrictHostKeyChecking=no
        connect_timeout: Seconds to wait for connect; 0 waits indefinitely
    """
    host: str
    username: str
    password: str = ""
    private_key_location: str | Path | None = None
    passphrase: str = ""
    known_hosts_location: str | Path | None = None
    port: int = DEFAULT_SSH_PORT
    daemon: bool = False
    properties: dict[str, str] = field(default_factory=dict)
    connect_timeout: float = 0

    def __post_init__(self) -> None:
        assert isinstance(self.daemon, bool), \
            f"daemon must be a bool, got {type(self.daemon).__name__}"
        if self.properties is None:
            self.properties = {}
        assert isinstance(self.properties, Mapping), \
            f"properties must be a mapping, got {type(self.properties).__name__}"

    def resolve(self) -> "ConnectionParams":
        """
        Return a validated copy with concrete paths and a merged config.

        Raises:
            ConfigResolutionError: Naming the first missing or malformed field
        """
        if self.password is None or self.passphrase is None:
            name = "password" if self.password is None else "passphrase"
            raise ConfigResolutionError(f"{name} must be a string, got None", field_name=name)

        validate_timeout(self.connect_timeout, "connect_timeout")
        return dataclasses.replace(
            self,
            host=validate_hostname(self.host),
            username=validate_username(self.username),
            port=validate_port(self.port),
            private_key_location=resolve_path(
                self.private_key_location, "private_key_location", default_key_location(),
            ),
            known_hosts_location=resolve_path(
                self.known_hosts_location, "known_hosts_location", default_known_hosts_location(),
            ),
            properties=merge_session_config(self.properties),
        )
