"""
Session lifecycle tests against MockSSHServer.

Tests:
- create_session configuration (password, daemon flag, merged config)
- with_session connects, runs the operation and always disconnects
- connect failures map onto the SSHConnectionError taxonomy
- host key checking modes against the engine trust store
- CONNECT / DISCONNECT / ERROR event sequence
"""
from __future__ import annotations

import asyncio
import socket
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from scopessh.engine import create_engine
from scopessh.errors import (
    AuthFailed,
    ConfigResolutionError,
    ConnectionRefused,
    ConnectionTimeout,
    HostKeyMismatch,
    ProtocolStateError,
    SSHConnectionError,
)
from scopessh.session import Session, create_session, with_session

if TYPE_CHECKING:
    from conftest import SSHServerInfo


def _free_port() -> int:
    """A local port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestCreateSession:
    """create_session builds an unconnected, configured session."""

    def test_defaults(self, engine) -> None:
        session = create_session(engine, "example.com", "deploy")

        assert isinstance(session, Session)
        assert not session.is_connected
        assert session.port == 22
        assert session.daemon_thread is False
        assert session.has_password is False
        assert session.config == {"StrictHostKeyChecking": "no"}

    def test_password_set_when_non_blank(self, engine) -> None:
        session = create_session(engine, "example.com", "deploy", password="s3cret")
        assert session.has_password

    def test_blank_password_not_set(self, engine) -> None:
        """Whitespace-only passwords mean key-based auth."""
        session = create_session(engine, "example.com", "deploy", password="   ")
        assert not session.has_password

    def test_daemon_flag(self, engine) -> None:
        session = create_session(engine, "example.com", "deploy", daemon=True)
        assert session.daemon_thread is True

    def test_properties_merged(self, engine) -> None:
        session = create_session(
            engine, "example.com", "deploy",
            properties={"StrictHostKeyChecking": "yes", "Compression": "yes"},
        )
        assert session.get_config("StrictHostKeyChecking") == "yes"
        assert session.get_config("Compression") == "yes"
        assert session.get_config("ForwardAgent") is None

    def test_customize_hook(self, engine) -> None:
        session = create_session(
            engine, "example.com", "deploy",
            customize=lambda s: s.set_config({"ConnectTimeout": "3"}),
        )
        assert session.get_config("ConnectTimeout") == "3"
        assert session.get_config("StrictHostKeyChecking") == "no"

    def test_invalid_host_rejected(self, engine) -> None:
        with pytest.raises(ConfigResolutionError) as exc_info:
            create_session(engine, "bad host", "deploy")
        assert exc_info.value.field_name == "host"

    def test_invalid_port_rejected(self, engine) -> None:
        with pytest.raises(ConfigResolutionError) as exc_info:
            create_session(engine, "example.com", "deploy", port=0)
        assert exc_info.value.field_name == "port"

    def test_missing_username_rejected(self, engine) -> None:
        with pytest.raises(ConfigResolutionError) as exc_info:
            create_session(engine, "example.com", None)  # type: ignore
        assert exc_info.value.field_name == "username"


@pytest.mark.asyncio
async def test_with_session_connects_and_disconnects(
    ssh_server: "SSHServerInfo",
    engine,
    event_collector,
) -> None:
    """The operation sees a connected session; it is closed afterwards."""
    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port,
    )

    async def operation(s: Session) -> str:
        assert s is session
        assert s.is_connected, "Session should be connected inside the operation"
        return "done"

    result = await with_session(session, operation)

    assert result == "done"
    assert not session.is_connected, "Session must be disconnected after with_session"

    event_types = [e.event_type for e in event_collector.events]
    assert event_types == ["CONNECT", "CONNECT", "DISCONNECT"], f"Unexpected events: {event_types}"
    connect_events = event_collector.get_by_type("CONNECT")
    assert connect_events[0].data["status"] == "initiating"
    assert connect_events[0].data["auth"] == "password"
    assert connect_events[1].data["status"] == "connected"
    assert connect_events[1].data["duration_ms"] >= 0


@pytest.mark.asyncio
async def test_with_session_accepts_sync_operation(ssh_server: "SSHServerInfo", engine) -> None:
    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port,
    )

    result = await with_session(session, lambda s: s.is_connected)

    assert result is True
    assert not session.is_connected


@pytest.mark.asyncio
async def test_with_session_disconnects_on_error(
    ssh_server: "SSHServerInfo",
    engine,
    event_collector,
) -> None:
    """An operation error propagates unchanged and the session is still closed."""
    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port,
    )
    boom = RuntimeError("operation failed")

    async def operation(s: Session) -> None:
        raise boom

    with pytest.raises(RuntimeError) as exc_info:
        await with_session(session, operation)

    assert exc_info.value is boom
    assert not session.is_connected
    assert len(event_collector.get_by_type("DISCONNECT")) == 1


@pytest.mark.asyncio
async def test_with_session_reuses_connected_session(ssh_server: "SSHServerInfo", engine) -> None:
    """A session connected beforehand is not reconnected, but is still closed."""
    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port,
    )
    await session.connect()
    conn = session.connection

    seen = await with_session(session, lambda s: s.connection)

    assert seen is conn
    assert not session.is_connected


@pytest.mark.asyncio
async def test_session_async_context_manager(ssh_server: "SSHServerInfo", engine) -> None:
    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port,
    )

    async with session as s:
        assert s.is_connected

    assert not session.is_connected


@pytest.mark.asyncio
async def test_connect_twice_rejected(ssh_server: "SSHServerInfo", engine) -> None:
    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port,
    )
    await session.connect()
    try:
        with pytest.raises(ProtocolStateError, match="already connected"):
            await session.connect()
    finally:
        await session.disconnect()


async def _wait_until_dropped(session: Session) -> None:
    for _ in range(100):
        if not session.is_connected:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("Transport loss was never observed")


@pytest.mark.asyncio
async def test_with_session_reconnects_after_transport_loss(
    ssh_server: "SSHServerInfo",
    engine,
    event_collector,
) -> None:
    """A session whose transport dropped reports disconnected and can be reused."""
    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port,
    )
    await session.connect()
    stale = session.connection

    stale.abort()
    await _wait_until_dropped(session)

    async def operation(s: Session) -> bool:
        assert s.connection is not stale
        return s.is_connected

    assert await with_session(session, operation) is True
    assert not session.is_connected

    # One DISCONNECT for the stale transport, one for the scoped connection
    assert len(event_collector.get_by_type("DISCONNECT")) == 2
    connected = [e for e in event_collector.get_by_type("CONNECT") if e.data["status"] == "connected"]
    assert len(connected) == 2


@pytest.mark.asyncio
async def test_reconnect_releases_stale_channels(ssh_server: "SSHServerInfo", engine) -> None:
    from scopessh.channel import ChannelType

    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port,
    )
    await session.connect()
    channel = session.open_channel(ChannelType.EXEC)
    channel.set_command("echo hi")
    await channel.connect()

    session.connection.abort()
    await _wait_until_dropped(session)

    await session.connect()
    try:
        assert session.is_connected
        assert session.channels == []
        assert not channel.is_connected
    finally:
        await session.disconnect()


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(ssh_server: "SSHServerInfo", engine, event_collector) -> None:
    """Extra disconnects, and disconnecting a never-connected session, are no-ops."""
    never_connected = create_session(engine, ssh_server.host, ssh_server.username)
    await never_connected.disconnect()
    assert event_collector.events == []

    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port,
    )
    await session.connect()
    await session.disconnect()
    await session.disconnect()

    assert len(event_collector.get_by_type("DISCONNECT")) == 1


def test_connection_property_requires_connect(engine) -> None:
    session = create_session(engine, "example.com", "deploy")
    with pytest.raises(ProtocolStateError, match="not connected"):
        session.connection


@pytest.mark.asyncio
async def test_daemon_session_disconnects(ssh_server: "SSHServerInfo", engine, event_collector) -> None:
    """A daemon session closes without awaiting the transport shutdown."""
    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port, daemon=True,
    )

    await with_session(session, lambda s: None)

    assert not session.is_connected
    disconnect = event_collector.get_by_type("DISCONNECT")
    assert len(disconnect) == 1
    assert disconnect[0].data["daemon"] is True


# ---------------------------------------------------------------------------
# Connect failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_wrong_password_auth_failed(
    ssh_server: "SSHServerInfo",
    engine,
    event_collector,
) -> None:
    """Rejected credentials raise AuthFailed carrying the connection coordinates."""
    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password="wrong", port=ssh_server.port,
    )

    with pytest.raises(AuthFailed) as exc_info:
        await with_session(session, lambda s: None)

    ctx = exc_info.value.context
    assert ctx.host == ssh_server.host
    assert ctx.port == ssh_server.port
    assert ctx.username == ssh_server.username
    assert ctx.original_error
    assert isinstance(exc_info.value, SSHConnectionError)
    assert not session.is_connected

    errors = event_collector.get_by_type("ERROR")
    assert len(errors) == 1
    assert errors[0].data["error_type"] == "AuthFailed"
    assert event_collector.get_by_type("DISCONNECT") == []


@pytest.mark.asyncio
async def test_no_credentials_auth_failed(ssh_server: "SSHServerInfo", engine) -> None:
    """Without a password or identity there is nothing to authenticate with."""
    session = create_session(engine, ssh_server.host, ssh_server.username, port=ssh_server.port)

    with pytest.raises(AuthFailed):
        await session.connect()


@pytest.mark.asyncio
async def test_connection_refused(engine) -> None:
    session = create_session(engine, "127.0.0.1", "test", password="test", port=_free_port())

    with pytest.raises(ConnectionRefused) as exc_info:
        await with_session(session, lambda s: None)

    assert exc_info.value.context.host == "127.0.0.1"
    assert not session.is_connected


@pytest.mark.asyncio
async def test_connect_timeout(engine) -> None:
    """A server that accepts TCP but never speaks SSH times out."""

    async def silent(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await asyncio.sleep(10)
        writer.close()

    server = await asyncio.start_server(silent, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        session = create_session(engine, "127.0.0.1", "test", password="test", port=port)
        with pytest.raises(ConnectionTimeout):
            await with_session(session, lambda s: None, timeout=0.5)
        assert not session.is_connected
    finally:
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_connect_timeout_from_config(engine) -> None:
    """ConnectTimeout applies when no explicit timeout is given."""

    async def silent(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await asyncio.sleep(10)
        writer.close()

    server = await asyncio.start_server(silent, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        session = create_session(
            engine, "127.0.0.1", "test", password="test", port=port,
            properties={"ConnectTimeout": "0.5"},
        )
        with pytest.raises(ConnectionTimeout):
            await session.connect()
    finally:
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_malformed_config_fails_before_connect(engine, event_collector) -> None:
    session = create_session(
        engine, "127.0.0.1", "test", password="test", port=_free_port(),
        properties={"ServerAliveInterval": "often"},
    )

    with pytest.raises(ConfigResolutionError) as exc_info:
        await session.connect()

    assert exc_info.value.field_name == "ServerAliveInterval"
    assert event_collector.events == [], "No connect attempt should have been made"


@pytest.mark.asyncio
async def test_negative_timeout_rejected(engine) -> None:
    session = create_session(engine, "127.0.0.1", "test", password="test", port=_free_port())
    with pytest.raises(ConfigResolutionError):
        await session.connect(-1)


@pytest.mark.asyncio
async def test_connect_with_connection_options(ssh_server: "SSHServerInfo", engine) -> None:
    """Compression and keepalive keys are accepted by a real handshake."""
    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port,
        properties={
            "Compression": "yes",
            "ServerAliveInterval": "30",
            "ServerAliveCountMax": "3",
            "PreferredAuthentications": "password",
        },
    )

    assert await with_session(session, lambda s: s.is_connected) is True


# ---------------------------------------------------------------------------
# Host key checking
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_strict_checking_rejects_unknown_host(
    ssh_server: "SSHServerInfo",
    engine,
    event_collector,
) -> None:
    """With checking enabled and no trust store, every host is unknown."""
    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port,
        properties={"StrictHostKeyChecking": "yes"},
    )

    with pytest.raises(HostKeyMismatch) as exc_info:
        await with_session(session, lambda s: None)

    assert exc_info.value.context.extra["host_key"] == "unknown"
    assert event_collector.get_by_type("ERROR")[0].data["error_type"] == "HostKeyMismatch"


@pytest.mark.asyncio
async def test_strict_checking_trusts_known_host(
    mock_ssh_server,
    ssh_server: "SSHServerInfo",
    tmp_path: Path,
) -> None:
    """A host listed in known_hosts connects with checking enabled."""
    known_hosts = tmp_path / "known_hosts"
    known_hosts.write_text(mock_ssh_server.known_hosts_line(ssh_server.host))
    engine = create_engine(
        private_key_location=tmp_path / "id_rsa",
        known_hosts_location=known_hosts,
    )

    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port,
        properties={"StrictHostKeyChecking": "yes"},
    )

    assert await with_session(session, lambda s: s.is_connected) is True


@pytest.mark.asyncio
async def test_strict_checking_rejects_changed_key(ssh_server: "SSHServerInfo", tmp_path: Path) -> None:
    """A different key on record for the host is reported as changed."""
    import asyncssh

    other = asyncssh.generate_private_key("ssh-ed25519").export_public_key().decode("ascii").split()
    known_hosts = tmp_path / "known_hosts"
    known_hosts.write_text(f"[{ssh_server.host}]:{ssh_server.port} {other[0]} {other[1]}\n")
    engine = create_engine(
        private_key_location=tmp_path / "id_rsa",
        known_hosts_location=known_hosts,
    )

    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port,
        properties={"StrictHostKeyChecking": "yes"},
    )

    with pytest.raises(HostKeyMismatch) as exc_info:
        await with_session(session, lambda s: None)
    assert exc_info.value.context.extra["host_key"] == "changed"


@pytest.mark.asyncio
async def test_accept_new_allows_unknown_host(ssh_server: "SSHServerInfo", engine) -> None:
    session = create_session(
        engine, ssh_server.host, ssh_server.username,
        password=ssh_server.password, port=ssh_server.port,
        properties={"StrictHostKeyChecking": "accept-new"},
    )

    assert await with_session(session, lambda s: s.is_connected) is True


# ---------------------------------------------------------------------------
# Key authentication
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_connect_with_engine_identity(event_collector, tmp_path: Path) -> None:
    """A session without a password authenticates with the engine identity."""
    import asyncssh

    from scopessh.testing.mock_server import MockServerConfig, MockSSHServer

    private_key = asyncssh.generate_private_key("ssh-ed25519")
    key_path = tmp_path / "id_ed25519"
    key_path.write_bytes(private_key.export_private_key())
    key_path.chmod(0o600)

    config = MockServerConfig(
        username="test",
        password="unused",
        authorized_keys=[private_key.export_public_key().decode("utf-8")],
    )

    async with MockSSHServer(config) as server:
        engine = create_engine(
            private_key_location=key_path,
            known_hosts_location=tmp_path / "known_hosts",
            event_collector=event_collector,
        )
        session = create_session(engine, "localhost", "test", port=server.port)

        assert await with_session(session, lambda s: s.is_connected) is True

    initiating = event_collector.get_by_type("CONNECT")[0]
    assert initiating.data["auth"] == "publickey"
    assert server.log.get_by_type("SERVER_AUTH") == [], "Password auth should not be attempted"
