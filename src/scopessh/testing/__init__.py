"""
Testing utilities for scopessh.

Provides MockSSHServer for session and channel lifecycle tests without a
real sshd.
"""
from scopessh.testing.mock_server import MockServerConfig, MockSSHServer

__all__ = ["MockSSHServer", "MockServerConfig"]
