"""
Cross-platform SSH directory and default file locations.

Provides:
- Platform-appropriate ~/.ssh directory
- Default private key (id_rsa) and known_hosts paths
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

DEFAULT_KEY_NAME = "id_rsa"
KNOWN_HOSTS_NAME = "known_hosts"


def is_windows() -> bool:
    """Check if running on Windows."""
    return sys.platform == "win32"


def get_home_dir() -> Path:
    """
    Get the current user's home directory.

    Returns:
        %USERPROFILE% on Windows (falling back to HOME), Path.home() elsewhere
    """
    if is_windows():
        for var in ("USERPROFILE", "HOME"):
            value = os.environ.get(var)
            if value:
                return Path(value)
    return Path.home()


def get_ssh_dir() -> Path:
    """Get the platform-appropriate SSH directory (<home>/.ssh)."""
    return get_home_dir() / ".ssh"


def get_default_key_path() -> Path:
    """Get the default private key path (<home>/.ssh/id_rsa)."""
    return get_ssh_dir() / DEFAULT_KEY_NAME


def get_known_hosts_path() -> Path:
    """Get the default known_hosts path (<home>/.ssh/known_hosts)."""
    return get_ssh_dir() / KNOWN_HOSTS_NAME
