"""
SSH error taxonomy with structured data for JSONL logging.

Every failure surfaced by scopessh is an SSHError carrying an ErrorContext,
so callers can branch on the exception type and event sinks can record the
same data as a flat dictionary.

Error hierarchy:
- SSHError (base)
  - ConfigResolutionError (malformed overrides, detected before any I/O)
    - KeyLoadError (private key present but unusable)
    - KnownHostsLoadError (known_hosts present but unusable)
  - SSHConnectionError (session could not be established)
    - ConnectionRefused
    - ConnectionTimeout
    - HostUnreachable
    - AuthenticationError
      - AuthFailed (credentials rejected)
      - HostKeyMismatch (host key verification failed)
      - NoMutualKex (key exchange algorithm mismatch)
  - ProtocolStateError (lifecycle ordering violated)
  - UnsupportedChannelTypeError (typed channel kind has no mapping)
  - StreamError (reading or decoding command output failed)
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any


@dataclass
class ErrorContext:
    """
    Structured context for SSH errors.

    Carries the connection coordinates and the underlying engine error so
    a failure can be diagnosed from the event log alone.
    """
    host: str | None = None
    port: int | None = None
    username: str | None = None
    channel_type: str | None = None
    key_path: str | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Invariant: port must be in valid TCP range if specified
        if self.port is not None:
            assert isinstance(self.port, int) and 1 <= self.port <= 65535, (
                f"Port must be between 1 and 65535, got {self.port}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if key == "extra" and isinstance(value, dict):
                # Precondition: extra keys must not shadow dataclass fields
                field_names = {f.name for f in fields(self)} - {"extra"}
                collisions = field_names & value.keys()
                assert not collisions, (
                    f"Extra keys collision with dataclass field names: "
                    f"{collisions}. Use distinct key names in extra."
                )
                result.update(value)
            else:
                result[key] = value
        return result


class SSHError(Exception):
    """
    Base exception for all scopessh errors.

    All errors carry structured context for logging and debugging.
    """

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        # Precondition: message must be non-empty
        assert isinstance(message, str) and message.strip(), (
            f"SSHError message must be a non-empty string, got {message!r}"
        )
        super().__init__(message)
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        """Return the error type name for logging."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSONL logging."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            **self.context.to_dict(),
        }


# ---------------------------------------------------------------------------
# Configuration Errors
# ---------------------------------------------------------------------------

class ConfigResolutionError(SSHError, ValueError):
    """
    A connection parameter or override is malformed.

    Raised before any network attempt, naming the offending field.
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if field_name:
            context.extra["field"] = field_name
        super().__init__(message, context)
        self.field_name = field_name


class KeyLoadError(ConfigResolutionError):
    """
    A private key file exists but could not be loaded.

    This is raised when:
    - Key file is not readable
    - Key file format is invalid
    - Passphrase is missing or incorrect for an encrypted key
    """

    def __init__(
        self,
        message: str,
        key_path: str | None = None,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        # Precondition: key_path must be None or a non-empty string
        assert key_path is None or (isinstance(key_path, str) and key_path.strip()), (
            f"key_path must be None or a non-empty string, got {key_path!r}"
        )
        if context is None:
            context = ErrorContext()
        context.key_path = key_path
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, field_name="private_key_location", context=context)
        self.reason = reason


class KnownHostsLoadError(ConfigResolutionError):
    """A known_hosts file exists but could not be parsed."""

    def __init__(
        self,
        message: str,
        path: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if path:
            context.extra["known_hosts_path"] = path
        super().__init__(message, field_name="known_hosts_location", context=context)


# ---------------------------------------------------------------------------
# Connection Errors
# ---------------------------------------------------------------------------

class SSHConnectionError(SSHError):
    """Base class for failures to establish a session."""
    pass


class ConnectionRefused(SSHConnectionError):
    """Server actively refused the connection."""
    pass


class ConnectionTimeout(SSHConnectionError):
    """Connection attempt timed out."""
    pass


class HostUnreachable(SSHConnectionError):
    """Host could not be reached (network error)."""
    pass


class AuthenticationError(SSHConnectionError):
    """Base class for authentication-related connect failures."""
    pass


class AuthFailed(AuthenticationError):
    """
    Authentication failed due to invalid credentials.

    This is raised when:
    - Password is incorrect
    - Private key is not accepted by server
    - All attempted auth methods failed
    """
    pass


class HostKeyMismatch(AuthenticationError):
    """
    Host key verification failed.

    The server's host key is unknown or does not match the trust store
    while StrictHostKeyChecking is enabled.
    """
    pass


class NoMutualKex(AuthenticationError):
    """
    No mutual key exchange algorithm.

    Client and server could not agree on a key exchange algorithm.
    """
    pass


# ---------------------------------------------------------------------------
# Lifecycle Errors
# ---------------------------------------------------------------------------

class ProtocolStateError(SSHError):
    """
    An operation was attempted in the wrong lifecycle state.

    Typically a channel opened or connected on a session that is not
    connected.
    """
    pass


class UnsupportedChannelTypeError(SSHError, ValueError):
    """Typed channel retrieval was requested for a kind with no mapping."""

    def __init__(self, kind: object, context: ErrorContext | None = None) -> None:
        if isinstance(kind, type):
            name = kind.__name__
        else:
            name = getattr(kind, "value", kind)
        super().__init__(f"Unsupported channel kind: {name!r}", context)
        self.kind = kind


class StreamError(SSHError):
    """Reading or decoding remote command output failed."""
    pass
