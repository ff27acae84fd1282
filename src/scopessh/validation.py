"""
Input validation for SSH connection parameters.

Validates hostnames, usernames, ports, timeouts and file-path overrides
before any connection attempt, rejecting shell metacharacters, newlines,
null bytes and out-of-range values with a message naming the field.
"""

import ipaddress
import math
import re
from pathlib import Path
from typing import Final

from scopessh.errors import ConfigResolutionError

# Maximum lengths per RFC and POSIX standards
MAX_HOSTNAME_LENGTH: Final[int] = 253
MAX_LABEL_LENGTH: Final[int] = 63
MAX_USERNAME_LENGTH: Final[int] = 32

# Characters that must never appear in SSH parameters
DANGEROUS_CHARS: Final[frozenset[str]] = frozenset(
    "\x00"  # null byte
    "\n\r"  # newlines
    "`$(){}[]|;&<>\\'\""  # shell metacharacters
    "\t"  # tab
)

# Valid hostname label: alphanumeric and hyphens, no leading/trailing hyphen
_LABEL_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?$|^[a-zA-Z0-9]$"
)

# POSIX-style username: letter or underscore, then alphanumeric, underscore, dot, hyphen
_USERNAME_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-zA-Z_][a-zA-Z0-9_.-]*$"
)


def _describe_char(char: str) -> str:
    if char == "\x00":
        return "null byte"
    if char == "\n":
        return "newline"
    if char == "\r":
        return "carriage return"
    if char == "\t":
        return "tab"
    return repr(char)


def _check_dangerous_chars(value: str, field_name: str) -> None:
    """
    Check for dangerous characters in a value.

    Raises:
        ConfigResolutionError: If dangerous characters are found
    """
    assert isinstance(value, str), \
        f"Precondition: value must be str, got {type(value).__name__}"
    assert isinstance(field_name, str) and field_name, \
        f"Precondition: field_name must be non-empty str, got {field_name!r}"

    for char in value:
        if char in DANGEROUS_CHARS:
            raise ConfigResolutionError(
                f"{field_name} contains forbidden character: {_describe_char(char)}",
                field_name=field_name,
            )


def _require_string(value: object, field_name: str) -> str:
    # Check type first (before emptiness, so None gets the right error)
    if value is None:
        raise ConfigResolutionError(f"{field_name} is required", field_name=field_name)
    if not isinstance(value, str):
        raise ConfigResolutionError(
            f"{field_name} must be a string, got {type(value).__name__}",
            field_name=field_name,
        )
    if not value:
        raise ConfigResolutionError(f"{field_name} must not be empty", field_name=field_name)
    return value


def validate_hostname(hostname: str) -> str:
    """
    Validate and normalise a hostname per RFC 952/1123.

    IPv4 and IPv6 literals are accepted as-is.

    Returns:
        The normalised hostname (lowercase)

    Raises:
        ConfigResolutionError: If the hostname is missing or invalid
    """
    hostname = _require_string(hostname, "host")

    try:
        return str(ipaddress.ip_address(hostname))
    except ValueError:
        pass

    _check_dangerous_chars(hostname, "host")

    if len(hostname) > MAX_HOSTNAME_LENGTH:
        raise ConfigResolutionError(
            f"host exceeds maximum length of {MAX_HOSTNAME_LENGTH} characters "
            f"(got {len(hostname)})",
            field_name="host",
        )

    labels = hostname.split(".")
    for i, label in enumerate(labels):
        # Empty labels indicate consecutive dots or leading/trailing dots
        if not label:
            if i == 0:
                reason = "must not start with a dot"
            elif i == len(labels) - 1:
                reason = "must not end with a dot"
            else:
                reason = "must not contain consecutive dots"
            raise ConfigResolutionError(f"host {reason}", field_name="host")

        if len(label) > MAX_LABEL_LENGTH:
            raise ConfigResolutionError(
                f"host label '{label}' exceeds maximum length of "
                f"{MAX_LABEL_LENGTH} characters (got {len(label)})",
                field_name="host",
            )

        if not _LABEL_PATTERN.match(label):
            if label.startswith("-") or label.endswith("-"):
                reason = "must not start or end with a hyphen"
            else:
                reason = "contains invalid characters (only alphanumeric and hyphens allowed)"
            raise ConfigResolutionError(f"host label '{label}' {reason}", field_name="host")

    result = hostname.lower()
    assert 0 < len(result) <= MAX_HOSTNAME_LENGTH, \
        f"Postcondition: normalised hostname length {len(result)} out of range"
    return result


def validate_username(username: str) -> str:
    """
    Validate a username per POSIX conventions.

    Raises:
        ConfigResolutionError: If the username is missing or invalid
    """
    username = _require_string(username, "username")
    _check_dangerous_chars(username, "username")

    if len(username) > MAX_USERNAME_LENGTH:
        raise ConfigResolutionError(
            f"username exceeds maximum length of {MAX_USERNAME_LENGTH} characters "
            f"(got {len(username)})",
            field_name="username",
        )

    if not _USERNAME_PATTERN.match(username):
        first_char = username[0]
        if not ((first_char.isascii() and first_char.isalpha()) or first_char == "_"):
            message = f"username must start with a letter or underscore, got '{first_char}'"
        else:
            bad = next(c for c in username if not ((c.isascii() and c.isalnum()) or c in "_.-"))
            message = f"username contains invalid character: {bad!r}"
        raise ConfigResolutionError(message, field_name="username")

    return username


def validate_port(port: int) -> int:
    """
    Validate a port number per RFC 793.

    Raises:
        ConfigResolutionError: If the port is not an integer in 1-65535
    """
    # bool is a subclass of int
    if isinstance(port, bool) or not isinstance(port, int):
        raise ConfigResolutionError(
            f"port must be an integer, got {type(port).__name__}",
            field_name="port",
        )
    if not 1 <= port <= 65535:
        raise ConfigResolutionError(
            f"port must be between 1 and 65535, got {port}",
            field_name="port",
        )
    return port


def validate_timeout(timeout: float, field_name: str = "timeout") -> float | None:
    """
    Validate a connect timeout in seconds.

    Returns:
        The timeout, or None when it is 0 (wait indefinitely)

    Raises:
        ConfigResolutionError: If the timeout is negative or not a number
    """
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        raise ConfigResolutionError(
            f"{field_name} must be a number of seconds, got {type(timeout).__name__}",
            field_name=field_name,
        )
    if math.isnan(timeout) or timeout < 0:
        raise ConfigResolutionError(
            f"{field_name} must be >= 0, got {timeout}",
            field_name=field_name,
        )
    return float(timeout) if timeout else None


def validate_path(value: str | Path, field_name: str) -> Path:
    """
    Validate a file path override and expand a leading ~.

    The file does not need to exist; only the path syntax is checked.

    Raises:
        ConfigResolutionError: If the path is empty, not a string, or contains a null byte
    """
    if isinstance(value, Path):
        value = str(value)
    value = _require_string(value, field_name)
    if "\x00" in value:
        raise ConfigResolutionError(
            f"{field_name} contains forbidden character: null byte",
            field_name=field_name,
        )
    return Path(value).expanduser()
