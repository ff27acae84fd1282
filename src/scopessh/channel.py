"""
Channel lifecycle: open, connect, use, disconnect.

Provides:
- ChannelType: the engine channel names a session can open
- ChannelKind / resolve_channel_type: typed channel retrieval mapping
- Channel and one subclass per ChannelType
- open_channel / open_typed_channel / with_channel

A channel is opened (constructed and bound) on a connected session, then
connected separately, which is when the asyncssh channel, SFTP client or
listener is actually created. Disconnect is idempotent and best-effort.
"""
from __future__ import annotations

import asyncio
import io
import logging
import time
from enum import Enum
from typing import IO, Any, Awaitable, Callable, TypeVar

import asyncssh

from scopessh.errors import (
    ConnectionTimeout,
    ErrorContext,
    ProtocolStateError,
    SSHConnectionError,
    UnsupportedChannelTypeError,
)
from scopessh.events import EventType
from scopessh.session import Session, run_operation
from scopessh.validation import validate_hostname, validate_port, validate_timeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

# How long disconnect waits for the stderr pump to flush before cancelling it
STDERR_FLUSH_TIMEOUT = 1.0


class ChannelType(str, Enum):
    """Channel types, valued by their SSH channel / request name."""
    SESSION = "session"
    SHELL = "shell"
    EXEC = "exec"
    X11 = "x11"
    AGENT_FORWARDING = "auth-agent@openssh.com"
    DIRECT_TCP_IP = "direct-tcpip"
    FORWARDED_TCP_IP = "forwarded-tcpip"
    SFTP = "sftp"
    SUBSYSTEM = "subsystem"


class ChannelKind(str, Enum):
    """Concrete channel kinds a caller may ask for by name."""
    SESSION = "session"
    SHELL = "shell"
    EXEC = "exec"
    X11 = "x11"
    AGENT_FORWARDING = "agent-forwarding"
    DIRECT_TCP_IP = "direct-tcp-ip"
    FORWARDED_TCP_IP = "forwarded-tcp-ip"
    SFTP = "sftp"
    SUBSYSTEM = "subsystem"


_TYPED_CHANNELS: dict[ChannelKind, ChannelType] = {
    ChannelKind.SHELL: ChannelType.SHELL,
    ChannelKind.EXEC: ChannelType.EXEC,
    ChannelKind.DIRECT_TCP_IP: ChannelType.DIRECT_TCP_IP,
    ChannelKind.FORWARDED_TCP_IP: ChannelType.FORWARDED_TCP_IP,
    ChannelKind.SFTP: ChannelType.SFTP,
}


def resolve_channel_type(kind: ChannelKind | str) -> ChannelType:
    """
    Map a requested channel kind to its ChannelType.

    Only shell, exec, direct-tcp-ip, forwarded-tcp-ip and sftp have a typed
    mapping.

    Raises:
        UnsupportedChannelTypeError: For any other kind, naming it
    """
    try:
        return _TYPED_CHANNELS[ChannelKind(kind)]
    except (KeyError, ValueError):
        raise UnsupportedChannelTypeError(kind) from None


class Channel:
    """
    Base class for a channel bound to one Session.

    Usage:
        channel = open_channel(session, ChannelType.SFTP)
        async with channel:
            await channel.sftp.listdir(".")
    """

    channel_type: ChannelType

    def __init__(self, session: Session) -> None:
        self._session = session
        self._connected = False
        self._connected_at_ms: float | None = None

    @property
    def session(self) -> Session:
        return self._session

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _context(self) -> ErrorContext:
        return self._session._context(channel_type=self.channel_type.value)

    def _event_data(self) -> dict[str, Any]:
        return {
            "channel_type": self.channel_type.value,
            "host": self._session.host,
            "port": self._session.port,
        }

    async def _open(self, conn: asyncssh.SSHClientConnection) -> None:
        raise NotImplementedError

    async def _close(self) -> None:
        raise NotImplementedError

    async def connect(self, timeout: float = 0) -> None:
        """
        Connect the channel on its session.

        Args:
            timeout: Seconds to wait; 0 waits indefinitely

        Raises:
            ProtocolStateError: If the channel is already connected or the
                session is not connected
            ConnectionTimeout: If the timeout expires
            SSHConnectionError: If the server refuses the channel
        """
        if self._connected:
            raise ProtocolStateError(
                f"{self.channel_type.value} channel is already connected",
                context=self._context(),
            )
        if not self._session.is_connected:
            raise ProtocolStateError(
                f"Cannot connect {self.channel_type.value} channel: session is not connected",
                context=self._context(),
            )

        conn = self._session.connection
        limit = validate_timeout(timeout)
        emitter = self._session.engine.emitter
        start_ms = time.time() * 1000

        try:
            if limit is None:
                await self._open(conn)
            else:
                await asyncio.wait_for(self._open(conn), limit)
        except Exception as e:
            await self._release()
            if isinstance(e, asyncio.TimeoutError):
                error = ConnectionTimeout(
                    f"Timed out connecting {self.channel_type.value} channel after {limit}s",
                    context=self._context(),
                )
            elif isinstance(e, (asyncssh.ChannelOpenError, asyncssh.ChannelListenError)):
                ctx = self._context()
                ctx.original_error = str(e)
                error = SSHConnectionError(
                    f"Server refused {self.channel_type.value} channel: {e}",
                    context=ctx,
                )
            else:
                raise
            emitter.emit(
                EventType.ERROR,
                error_type=error.error_type,
                message=str(error),
                **self._event_data(),
            )
            raise error from e

        self._connected = True
        self._connected_at_ms = time.time() * 1000
        self._session._register_channel(self)
        emitter.emit(
            EventType.CHANNEL_OPEN,
            status="connected",
            duration_ms=self._connected_at_ms - start_ms,
            **self._event_data(),
        )

    async def _release(self) -> None:
        try:
            await self._close()
        except Exception as e:
            logger.warning(
                "Error closing %s channel on %s: %s",
                self.channel_type.value, self._session, e,
                exc_info=True,
            )

    async def disconnect(self) -> None:
        """Disconnect the channel. Safe to call repeatedly; close failures are logged."""
        if not self._connected:
            return
        self._connected = False
        self._session._unregister_channel(self)
        await self._release()

        duration_ms = None
        if self._connected_at_ms is not None:
            duration_ms = (time.time() * 1000) - self._connected_at_ms
        self._session.engine.emitter.emit(
            EventType.CHANNEL_CLOSE,
            duration_ms=duration_ms,
            **self._event_data(),
        )

    async def __aenter__(self) -> "Channel":
        if not self._connected:
            await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()

    def __repr__(self) -> str:
        state = "connected" if self._connected else "disconnected"
        return f"<{type(self).__name__} on {self._session!r} {state}>"


# ---------------------------------------------------------------------------
# Session-family channels (backed by an asyncssh process)
# ---------------------------------------------------------------------------

async def _stop_pump(err_task: asyncio.Task) -> None:
    """Give the stderr pump a moment to drain, then cancel it."""
    done, _ = await asyncio.wait({err_task}, timeout=STDERR_FLUSH_TIMEOUT)
    if not done:
        err_task.cancel()
        try:
            await err_task
        except asyncio.CancelledError:
            pass


class SessionChannel(Channel):
    """
    A session channel running the remote default shell without a PTY.

    Streams are bytes: ``input_stream`` reads remote stdout,
    ``output_stream`` writes remote stdin. When an error stream is set,
    remote stderr is copied into it while the channel is connected.
    """

    channel_type = ChannelType.SESSION

    def __init__(self, session: Session) -> None:
        super().__init__(session)
        self._command: str | None = None
        self._env: dict[str, str] = {}
        self._err_stream: IO[Any] | None = None
        self._process: asyncssh.SSHClientProcess | None = None
        self._err_task: asyncio.Task | None = None

    def set_env(self, name: str, value: str) -> None:
        self._env[name] = value

    def set_err_stream(self, stream: IO[Any] | None) -> None:
        """Redirect remote stderr into a text or binary file object."""
        self._err_stream = stream

    @property
    def err_stream(self) -> IO[Any] | None:
        return self._err_stream

    def _process_options(self) -> dict[str, Any]:
        return {}

    def _require_process(self) -> asyncssh.SSHClientProcess:
        if self._process is None:
            raise ProtocolStateError(
                f"{self.channel_type.value} channel is not connected",
                context=self._context(),
            )
        return self._process

    @property
    def input_stream(self) -> asyncssh.SSHReader | None:
        """Remote stdout, or None before connect."""
        return self._process.stdout if self._process is not None else None

    @property
    def output_stream(self) -> asyncssh.SSHWriter | None:
        """Remote stdin, or None before connect."""
        return self._process.stdin if self._process is not None else None

    @property
    def error_stream(self) -> asyncssh.SSHReader | None:
        """Remote stderr when no error stream redirect is set."""
        if self._process is None or self._err_stream is not None:
            return None
        return self._process.stderr

    @property
    def exit_status(self) -> int | None:
        return self._process.exit_status if self._process is not None else None

    async def wait(self) -> int | None:
        """Wait for the remote process to exit and return its exit status."""
        process = self._require_process()
        await process.wait_closed()
        return process.exit_status

    async def _open(self, conn: asyncssh.SSHClientConnection) -> None:
        self._process = await conn.create_process(
            self._command,
            env=self._env or (),
            encoding=None,
            **self._process_options(),
        )
        if self._err_stream is not None:
            self._err_task = asyncio.create_task(
                self._pump_stderr(self._process.stderr, self._err_stream)
            )

    async def _pump_stderr(self, reader: asyncssh.SSHReader, stream: IO[Any]) -> None:
        binary = isinstance(stream, (io.RawIOBase, io.BufferedIOBase))
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                stream.write(data if binary else data.decode("utf-8", errors="replace"))
                stream.flush()
        except (asyncssh.Error, OSError, ValueError) as e:
            logger.warning("stderr redirect for %s stopped: %s", self._session, e)

    async def _close(self) -> None:
        process, self._process = self._process, None
        err_task, self._err_task = self._err_task, None
        try:
            if process is not None:
                process.close()
                await process.wait_closed()
        finally:
            if err_task is not None:
                await _stop_pump(err_task)


class ExecChannel(SessionChannel):
    """Runs a single remote command."""

    channel_type = ChannelType.EXEC

    def set_command(self, command: str) -> None:
        self._command = command

    @property
    def command(self) -> str | None:
        return self._command

    async def _open(self, conn: asyncssh.SSHClientConnection) -> None:
        if not self._command:
            raise ProtocolStateError(
                "exec channel has no command; call set_command() before connect",
                context=self._context(),
            )
        await super()._open(conn)


class ShellChannel(SessionChannel):
    """Interactive shell with a pseudo-terminal."""

    channel_type = ChannelType.SHELL

    def __init__(self, session: Session) -> None:
        super().__init__(session)
        self._term_type = "vt100"
        self._term_size = (80, 24)

    def set_pty_type(self, term_type: str, columns: int = 80, rows: int = 24) -> None:
        assert columns > 0 and rows > 0, f"terminal size must be positive, got {columns}x{rows}"
        self._term_type = term_type
        self._term_size = (columns, rows)

    def _process_options(self) -> dict[str, Any]:
        return {
            "request_pty": True,
            "term_type": self._term_type,
            "term_size": self._term_size,
        }

    def change_terminal_size(self, columns: int, rows: int) -> None:
        self._require_process().change_terminal_size(columns, rows)
        self._term_size = (columns, rows)


class X11Channel(SessionChannel):
    """Session channel that requests X11 forwarding for its command."""

    channel_type = ChannelType.X11

    def set_command(self, command: str | None) -> None:
        self._command = command

    def _process_options(self) -> dict[str, Any]:
        return {"x11_forwarding": True}


class AgentForwardingChannel(SessionChannel):
    """
    Session channel with ssh-agent forwarding.

    Agent forwarding is negotiated per connection, so the session must have
    been connected with ``ForwardAgent=yes``.
    """

    channel_type = ChannelType.AGENT_FORWARDING

    def set_command(self, command: str | None) -> None:
        self._command = command

    async def _open(self, conn: asyncssh.SSHClientConnection) -> None:
        forward = (self._session.get_config("ForwardAgent") or "").strip().lower()
        if forward != "yes":
            raise ProtocolStateError(
                "agent forwarding requires the session property ForwardAgent=yes",
                context=self._context(),
            )
        await super()._open(conn)


class SubsystemChannel(SessionChannel):
    """Session channel bound to a named subsystem (e.g. netconf)."""

    channel_type = ChannelType.SUBSYSTEM

    def __init__(self, session: Session) -> None:
        super().__init__(session)
        self._subsystem: str | None = None

    def set_subsystem(self, name: str) -> None:
        self._subsystem = name

    @property
    def subsystem(self) -> str | None:
        return self._subsystem

    def _process_options(self) -> dict[str, Any]:
        return {"subsystem": self._subsystem}

    async def _open(self, conn: asyncssh.SSHClientConnection) -> None:
        if not self._subsystem:
            raise ProtocolStateError(
                "subsystem channel has no subsystem; call set_subsystem() before connect",
                context=self._context(),
            )
        await super()._open(conn)


# ---------------------------------------------------------------------------
# SFTP and TCP/IP channels
# ---------------------------------------------------------------------------

class SftpChannel(Channel):
    """SFTP client channel; ``sftp`` is the asyncssh SFTPClient while connected."""

    channel_type = ChannelType.SFTP

    def __init__(self, session: Session) -> None:
        super().__init__(session)
        self._sftp: asyncssh.SFTPClient | None = None

    @property
    def sftp(self) -> asyncssh.SFTPClient:
        if self._sftp is None:
            raise ProtocolStateError("sftp channel is not connected", context=self._context())
        return self._sftp

    async def _open(self, conn: asyncssh.SSHClientConnection) -> None:
        self._sftp = await conn.start_sftp_client()

    async def _close(self) -> None:
        sftp, self._sftp = self._sftp, None
        if sftp is not None:
            sftp.exit()
            await sftp.wait_closed()


class DirectTcpIpChannel(Channel):
    """
    Client-initiated TCP tunnel to host:port as seen from the server.

    ``input_stream`` / ``output_stream`` are the bytes reader and writer of
    the tunnelled connection.
    """

    channel_type = ChannelType.DIRECT_TCP_IP

    def __init__(self, session: Session) -> None:
        super().__init__(session)
        self._host: str | None = None
        self._port: int | None = None
        self._orig_host = ""
        self._orig_port = 0
        self._reader: asyncssh.SSHReader | None = None
        self._writer: asyncssh.SSHWriter | None = None

    def set_host(self, host: str) -> None:
        self._host = validate_hostname(host)

    def set_port(self, port: int) -> None:
        self._port = validate_port(port)

    def set_orig_ip_address(self, address: str) -> None:
        self._orig_host = address

    def set_orig_port(self, port: int) -> None:
        self._orig_port = port

    @property
    def input_stream(self) -> asyncssh.SSHReader | None:
        return self._reader

    @property
    def output_stream(self) -> asyncssh.SSHWriter | None:
        return self._writer

    async def _open(self, conn: asyncssh.SSHClientConnection) -> None:
        if self._host is None or self._port is None:
            raise ProtocolStateError(
                "direct-tcpip channel needs set_host() and set_port() before connect",
                context=self._context(),
            )
        self._reader, self._writer = await conn.open_connection(
            self._host,
            self._port,
            orig_host=self._orig_host,
            orig_port=self._orig_port,
        )

    async def _close(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is not None:
            writer.close()
            await writer.channel.wait_closed()


class ForwardedTcpIpChannel(Channel):
    """
    Remote port forward: the server listens and tunnels back to a local target.

    Connecting requests the forward; disconnecting cancels it.
    """

    channel_type = ChannelType.FORWARDED_TCP_IP

    def __init__(self, session: Session) -> None:
        super().__init__(session)
        self._listen_host = ""
        self._listen_port = 0
        self._dest_host = "localhost"
        self._dest_port: int | None = None
        self._listener: asyncssh.SSHListener | None = None

    def set_remote(self, listen_host: str, listen_port: int) -> None:
        """Address the server listens on; port 0 lets the server pick one."""
        assert listen_port >= 0, f"listen_port must be >= 0, got {listen_port}"
        self._listen_host = listen_host
        self._listen_port = listen_port

    def set_local(self, dest_host: str, dest_port: int) -> None:
        """Local target that forwarded connections are delivered to."""
        self._dest_host = validate_hostname(dest_host)
        self._dest_port = validate_port(dest_port)

    @property
    def listen_port(self) -> int | None:
        """Port the server is listening on, once connected."""
        return self._listener.get_port() if self._listener is not None else None

    async def _open(self, conn: asyncssh.SSHClientConnection) -> None:
        if self._dest_port is None:
            raise ProtocolStateError(
                "forwarded-tcpip channel needs set_local() before connect",
                context=self._context(),
            )
        self._listener = await conn.forward_remote_port(
            self._listen_host,
            self._listen_port,
            self._dest_host,
            self._dest_port,
        )

    async def _close(self) -> None:
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.close()
            await listener.wait_closed()


_CHANNEL_CLASSES: dict[ChannelType, type[Channel]] = {
    ChannelType.SESSION: SessionChannel,
    ChannelType.SHELL: ShellChannel,
    ChannelType.EXEC: ExecChannel,
    ChannelType.X11: X11Channel,
    ChannelType.AGENT_FORWARDING: AgentForwardingChannel,
    ChannelType.DIRECT_TCP_IP: DirectTcpIpChannel,
    ChannelType.FORWARDED_TCP_IP: ForwardedTcpIpChannel,
    ChannelType.SFTP: SftpChannel,
    ChannelType.SUBSYSTEM: SubsystemChannel,
}


def open_channel(session: Session, channel_type: ChannelType | str) -> Channel:
    """
    Open an unconnected channel of ``channel_type`` on a connected session.

    Args:
        session: A connected Session
        channel_type: ChannelType or its channel name (e.g. "exec")

    Raises:
        ProtocolStateError: If the session is not connected
        UnsupportedChannelTypeError: If the channel name is unknown
    """
    try:
        channel_type = ChannelType(channel_type)
    except ValueError:
        raise UnsupportedChannelTypeError(channel_type) from None

    if not session.is_connected:
        raise ProtocolStateError(
            f"Cannot open {channel_type.value} channel: session is not connected",
            context=session._context(channel_type=channel_type.value),
        )

    channel = _CHANNEL_CLASSES[channel_type](session)
    session.engine.emitter.emit(EventType.CHANNEL_OPEN, status="opened", **channel._event_data())
    return channel


def open_typed_channel(session: Session, kind: ChannelKind | str) -> Channel:
    """
    Open the channel class for a concrete kind, e.g. ``ChannelKind.EXEC``.

    The kind is resolved before the session is touched, so an unsupported
    kind leaves nothing behind.
    """
    return open_channel(session, resolve_channel_type(kind))


async def with_channel(
    channel: Channel,
    operation: Callable[[Channel], Awaitable[T] | T],
    timeout: float = 0,
) -> T:
    """
    Connect the channel if needed, run ``operation`` and always disconnect.

    The channel is disconnected on every exit path, including when
    ``operation`` raises; that error then propagates unchanged.
    """
    try:
        if not channel.is_connected:
            await channel.connect(timeout)
        return await run_operation(operation, channel)
    finally:
        await channel.disconnect()
