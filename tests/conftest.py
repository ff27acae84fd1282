"""
Pytest fixtures for scopessh integration tests.

Provides:
- SSH server fixtures (MockSSHServer-based, no real sshd required)
- An engine built without touching the real ~/.ssh
- ConnectionParams pointing at the mock server
- Event capture fixture for asserting event sequences
- A local TCP echo server for forwarding channel tests
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, AsyncGenerator, Generator

import pytest

if TYPE_CHECKING:
    from scopessh.engine import SSHEngine
    from scopessh.events import EventCollector
    from scopessh.resolver import ConnectionParams
    from scopessh.testing.mock_server import MockSSHServer


@dataclass
class SSHServerInfo:
    """Connection details for the test SSH server."""
    host: str
    port: int
    username: str
    password: str


@dataclass
class EchoServerInfo:
    """Address of the local TCP echo server."""
    host: str
    port: int


@pytest.fixture
async def mock_ssh_server() -> AsyncGenerator["MockSSHServer", None]:
    """
    Fixture providing a MockSSHServer with canned command output.

    Usage:
        async def test_example(mock_ssh_server, engine):
            session = create_session(
                engine, "localhost", "test", password="test", port=mock_ssh_server.port,
            )
            await with_session(session, ...)
    """
    from scopessh.testing.mock_server import MockServerConfig, MockSSHServer

    config = MockServerConfig(
        username="test",
        password="test",
    )

    async with MockSSHServer(config) as server:
        yield server


@pytest.fixture
async def streaming_ssh_server() -> AsyncGenerator["MockSSHServer", None]:
    """
    Fixture providing a MockSSHServer with real command execution.

    Use this for tests that need actual shell commands (printf, sh -c, ...).
    """
    from scopessh.testing.mock_server import MockServerConfig, MockSSHServer

    config = MockServerConfig(
        username="test",
        password="test",
        execute_commands=True,
    )

    async with MockSSHServer(config) as server:
        yield server


@pytest.fixture
def ssh_server(mock_ssh_server: "MockSSHServer") -> SSHServerInfo:
    """Connection details for the canned mock server."""
    return SSHServerInfo(
        host="localhost",
        port=mock_ssh_server.port,
        username="test",
        password="test",
    )


@pytest.fixture
def event_collector() -> Generator["EventCollector", None, None]:
    """
    Fixture for capturing and asserting event sequences.

    Usage:
        def test_example(event_collector):
            engine = create_engine(event_collector=event_collector, ...)
            ...
            assert event_collector.events[0].event_type == "CONNECT"
    """
    from scopessh.events import EventCollector

    collector = EventCollector()
    yield collector
    collector.clear()


@pytest.fixture
def temp_jsonl_path(tmp_path: Path) -> Path:
    """Provide a temporary path for JSONL event log output."""
    return tmp_path / "events.jsonl"


@pytest.fixture
def missing_key_path(tmp_path: Path) -> Path:
    """A private key location that does not exist."""
    return tmp_path / "ssh" / "id_rsa"


@pytest.fixture
def missing_known_hosts_path(tmp_path: Path) -> Path:
    """A known_hosts location that does not exist."""
    return tmp_path / "ssh" / "known_hosts"


@pytest.fixture
def engine(
    missing_key_path: Path,
    missing_known_hosts_path: Path,
    event_collector: "EventCollector",
) -> Generator["SSHEngine", None, None]:
    """
    An engine with no identity and no trust store, recording events.

    Built from paths under tmp_path so the developer's ~/.ssh is never read.
    """
    from scopessh.engine import create_engine

    engine = create_engine(
        private_key_location=missing_key_path,
        known_hosts_location=missing_known_hosts_path,
        event_collector=event_collector,
    )
    yield engine
    engine.close()


@pytest.fixture
def connection_params(
    ssh_server: SSHServerInfo,
    missing_key_path: Path,
    missing_known_hosts_path: Path,
) -> "ConnectionParams":
    """ConnectionParams for the canned mock server, password auth."""
    from scopessh.resolver import ConnectionParams

    return ConnectionParams(
        host=ssh_server.host,
        port=ssh_server.port,
        username=ssh_server.username,
        password=ssh_server.password,
        private_key_location=missing_key_path,
        known_hosts_location=missing_known_hosts_path,
    )


@pytest.fixture
def streaming_params(
    streaming_ssh_server: "MockSSHServer",
    missing_key_path: Path,
    missing_known_hosts_path: Path,
) -> "ConnectionParams":
    """ConnectionParams for the real-execution mock server."""
    from scopessh.resolver import ConnectionParams

    return ConnectionParams(
        host="localhost",
        port=streaming_ssh_server.port,
        username="test",
        password="test",
        private_key_location=missing_key_path,
        known_hosts_location=missing_known_hosts_path,
    )


@pytest.fixture
async def echo_server() -> AsyncGenerator[EchoServerInfo, None]:
    """A local TCP server that echoes every byte back to the sender."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield EchoServerInfo(host="127.0.0.1", port=port)
    finally:
        server.close()
        await server.wait_closed()
