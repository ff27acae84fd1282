"""
One-shot remote command execution.

Each call resolves the connection parameters, creates a session, opens an
exec channel inside it and tears both down before returning: the channel
first, then the session. Sessions are never reused between commands.

Usage:
    params = ConnectionParams(host="build.example.com", username="deploy")

    text = await execute_remote_as_string("uname -a", params)

    async def count(reader: LineReader) -> int:
        return len([line async for line in reader])

    lines = await execute_remote("ls -1", params, count)
"""
from __future__ import annotations

import sys
from typing import IO, Any, Awaitable, Callable, TypeVar

from scopessh.channel import ChannelType, ExecChannel, open_channel, with_channel
from scopessh.engine import SSHEngine, create_engine
from scopessh.errors import ConfigResolutionError
from scopessh.events import EventType
from scopessh.resolver import ConnectionParams
from scopessh.session import Session, create_session, run_operation, with_session
from scopessh.streams import LineReader, drain_to_string

T = TypeVar("T")


async def _run_exec(
    command: str,
    params: ConnectionParams,
    consume: Callable[[ExecChannel], Awaitable[T]],
    engine: SSHEngine | None,
    err_stream: IO[Any] | None,
) -> T:
    if not isinstance(command, str) or not command.strip():
        raise ConfigResolutionError("command must be a non-empty string", field_name="command")

    params = params.resolve()
    owns_engine = engine is None
    if engine is None:
        engine = create_engine(
            private_key_location=params.private_key_location,
            passphrase=params.passphrase,
            known_hosts_location=params.known_hosts_location,
        )

    session = create_session(
        engine,
        host=params.host,
        username=params.username,
        password=params.password,
        port=params.port,
        daemon=params.daemon,
        properties=params.properties,
    )

    async def in_session(session: Session) -> T:
        channel = open_channel(session, ChannelType.EXEC)
        channel.set_command(command)
        channel.set_err_stream(err_stream if err_stream is not None else sys.stderr)

        async def in_channel(channel: ExecChannel) -> T:
            with engine.emitter.timed_event(EventType.EXEC, command=command) as event_data:
                try:
                    return await consume(channel)
                except Exception as e:
                    event_data["error"] = str(e)
                    raise
                finally:
                    event_data["exit_code"] = channel.exit_status

        return await with_channel(channel, in_channel)

    try:
        return await with_session(session, in_session, timeout=params.connect_timeout)
    finally:
        if owns_engine:
            engine.close()


async def execute_remote(
    command: str,
    params: ConnectionParams,
    operation: Callable[[LineReader], Awaitable[T] | T],
    engine: SSHEngine | None = None,
    err_stream: IO[Any] | None = None,
) -> T:
    """
    Run ``command`` and hand its stdout to ``operation`` as a LineReader.

    The reader is only valid while ``operation`` runs; session and channel
    are closed as soon as it returns or raises.

    Args:
        command: Remote command line
        params: Connection parameters
        operation: Sync or async callable consuming the LineReader
        engine: Reuse an existing engine instead of building one from params
        err_stream: Where remote stderr goes (default: this process's stderr)

    Returns:
        Whatever ``operation`` returns
    """
    async def consume(channel: ExecChannel) -> T:
        return await run_operation(operation, LineReader(channel.input_stream))

    return await _run_exec(command, params, consume, engine, err_stream)


async def execute_remote_as_string(
    command: str,
    params: ConnectionParams,
    engine: SSHEngine | None = None,
    err_stream: IO[Any] | None = None,
) -> str:
    """
    Run ``command`` and return its whole stdout decoded as UTF-8.

    Returns an empty string if the channel has no output stream.
    """
    async def consume(channel: ExecChannel) -> str:
        return await drain_to_string(channel.input_stream)

    return await _run_exec(command, params, consume, engine, err_stream)
