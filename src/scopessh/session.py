"""
Session lifecycle: create, connect, use, disconnect.

Provides:
- Session: one logical connection to host:port as username
- create_session: build a configured, unconnected session from an engine
- with_session: connect-if-needed, run an operation, always disconnect

Every transition emits a lifecycle event. Disconnect is idempotent and
best-effort: a failure while closing is logged, never raised, so it can
not replace an error already propagating out of the caller's operation.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, TypeVar

import asyncssh

from scopessh.errors import (
    AuthFailed,
    ConfigResolutionError,
    ConnectionRefused,
    ConnectionTimeout,
    ErrorContext,
    HostKeyMismatch,
    HostUnreachable,
    NoMutualKex,
    ProtocolStateError,
    SSHConnectionError,
    SSHError,
)
from scopessh.events import EventType
from scopessh.resolver import DEFAULT_SSH_PORT, HOST_KEY_CHECKING, merge_session_config
from scopessh.validation import validate_hostname, validate_port, validate_timeout, validate_username

if TYPE_CHECKING:
    from scopessh.channel import Channel, ChannelType
    from scopessh.engine import SSHEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")

COMPRESSION_ALGS = ["zlib@openssh.com", "zlib"]


async def run_operation(operation: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async operation and await its result if needed."""
    result = operation(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class HostKeyResult(str, Enum):
    """Outcome of checking a server key against the engine trust store."""
    TRUSTED = "trusted"
    UNKNOWN = "unknown"
    CHANGED = "changed"
    REVOKED = "revoked"


def _is_yes(value: str | None) -> bool:
    return value is not None and value.strip().lower() == "yes"


class _SessionClient(asyncssh.SSHClient):
    """
    asyncssh client callbacks for one Session.

    Tracks transport loss so Session.is_connected stays truthful, and
    applies the accept-new host key policy.
    """

    def __init__(self, session: "Session", accept_unknown: bool) -> None:
        super().__init__()
        self._session = session
        self._accept_unknown = accept_unknown
        self.result: HostKeyResult | None = None

    def connection_lost(self, exc: Exception | None) -> None:
        self._session._connection_lost(self, exc)

    def validate_host_public_key(
        self,
        host: str,
        addr: str,
        port: int,
        key: asyncssh.SSHKey,
    ) -> bool:
        self.result = self._session._check_host_key(host, addr or host, port, key)
        if self.result == HostKeyResult.TRUSTED:
            return True
        if self.result == HostKeyResult.UNKNOWN:
            return self._accept_unknown
        return False


class Session:
    """
    One logical SSH connection, owned by the caller that created it.

    Usage:
        session = create_session(engine, "example.com", "deploy", password="...")
        async with session:
            channel = session.open_channel(ChannelType.EXEC)
            ...

    A session is created unconnected. Channels may only be opened while it
    is connected, and disconnecting the session first disconnects any
    channel still open on it.
    """

    def __init__(
        self,
        engine: "SSHEngine",
        host: str,
        username: str,
        port: int = DEFAULT_SSH_PORT,
    ) -> None:
        self._engine = engine
        self._host = host
        self._username = username
        self._port = port
        self._password: str | None = None
        self._daemon = False
        self._config: dict[str, str] = merge_session_config()
        self._conn: asyncssh.SSHClientConnection | None = None
        self._client: _SessionClient | None = None
        self._channels: list["Channel"] = []
        self._connected_at_ms: float | None = None
        self._lost = False

    # -- configuration -----------------------------------------------------

    @property
    def engine(self) -> "SSHEngine":
        return self._engine

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def username(self) -> str:
        return self._username

    @property
    def daemon_thread(self) -> bool:
        return self._daemon

    @property
    def has_password(self) -> bool:
        return self._password is not None

    def set_daemon_thread(self, daemon: bool) -> None:
        """
        Set the daemon lifetime flag.

        A daemon session closes its transport without waiting for the
        close handshake, so it never holds up interpreter shutdown.
        """
        self._daemon = bool(daemon)

    def set_password(self, password: str) -> None:
        self._password = password

    def set_config(self, config: Mapping[str, str]) -> None:
        """Replace the session config; the result is merged over the base map."""
        self._config = merge_session_config(config)

    def get_config(self, key: str) -> str | None:
        return self._config.get(key)

    @property
    def config(self) -> dict[str, str]:
        return dict(self._config)

    # -- state -------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._conn is not None and not self._lost

    @property
    def connection(self) -> asyncssh.SSHClientConnection:
        """The live asyncssh connection; raises if the session is not connected."""
        if self._conn is None or self._lost:
            raise ProtocolStateError("Session is not connected", context=self._context())
        return self._conn

    @property
    def channels(self) -> list["Channel"]:
        """Channels currently connected on this session."""
        return list(self._channels)

    def _context(self, channel_type: str | None = None) -> ErrorContext:
        return ErrorContext(
            host=self._host,
            port=self._port,
            username=self._username,
            channel_type=channel_type,
        )

    def _register_channel(self, channel: "Channel") -> None:
        self._channels.append(channel)

    def _unregister_channel(self, channel: "Channel") -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def _connection_lost(self, client: _SessionClient, exc: Exception | None) -> None:
        # Late notifications from a replaced transport are ignored
        if client is not self._client:
            return
        self._lost = True
        if exc is not None:
            logger.debug("Connection to %s:%s lost: %s", self._host, self._port, exc)

    # -- host keys ---------------------------------------------------------

    def _check_host_key(
        self,
        host: str,
        addr: str,
        port: int,
        key: asyncssh.SSHKey,
    ) -> HostKeyResult:
        known_hosts = self._engine.known_hosts
        if known_hosts is None:
            return HostKeyResult.UNKNOWN

        matches = known_hosts.match(host, addr, port)
        trusted_keys, revoked_keys = matches[0], matches[2]
        server_data = key.public_data

        if any(k.public_data == server_data for k in revoked_keys):
            return HostKeyResult.REVOKED
        if any(k.public_data == server_data for k in trusted_keys):
            return HostKeyResult.TRUSTED
        if trusted_keys:
            return HostKeyResult.CHANGED
        return HostKeyResult.UNKNOWN

    # -- connect / disconnect ----------------------------------------------

    def _float_option(self, key: str) -> float | None:
        value = self._config.get(key)
        if value is None or not value.strip():
            return None
        try:
            parsed = float(value)
        except ValueError:
            raise ConfigResolutionError(
                f"{key} must be a number, got {value!r}", field_name=key,
            ) from None
        if parsed < 0:
            raise ConfigResolutionError(f"{key} must be >= 0, got {value!r}", field_name=key)
        return parsed

    def _build_options(self, timeout: float | None) -> dict[str, Any]:
        """Translate the session config into asyncssh.connect() options."""
        if timeout is None:
            timeout = self._float_option("ConnectTimeout") or None

        options: dict[str, Any] = {
            "host": self._host,
            "port": self._port,
            "username": self._username,
            "password": self._password,
            "client_keys": self._engine.identities,
            # Only engine material is used: no ~/.ssh/config, no ambient agent keys
            "config": None,
        }
        if timeout is not None:
            options["connect_timeout"] = timeout

        if _is_yes(self._config.get("ForwardAgent")):
            options["agent_forwarding"] = True
        else:
            options["agent_path"] = None

        if _is_yes(self._config.get("Compression")):
            options["compression_algs"] = COMPRESSION_ALGS

        interval = self._float_option("ServerAliveInterval")
        if interval:
            options["keepalive_interval"] = interval
            count = self._float_option("ServerAliveCountMax")
            if count:
                options["keepalive_count_max"] = int(count)

        preferred = self._config.get("PreferredAuthentications")
        if preferred and preferred.strip():
            options["preferred_auth"] = [m.strip() for m in preferred.split(",") if m.strip()]

        checking = self._config[HOST_KEY_CHECKING].strip().lower()
        if checking == "no":
            options["known_hosts"] = None
        else:
            # Empty trust store: every key goes through validate_host_public_key
            options["known_hosts"] = asyncssh.import_known_hosts("")

        return options

    async def connect(self, timeout: float = 0) -> None:
        """
        Connect and authenticate.

        Args:
            timeout: Seconds to wait for the connection; 0 falls back to the
                ConnectTimeout config key, then waits indefinitely

        Raises:
            ProtocolStateError: If the session is already connected
            ConfigResolutionError: If the timeout or a config value is malformed
            SSHConnectionError: If the connection cannot be established
        """
        if self.is_connected:
            raise ProtocolStateError("Session is already connected", context=self._context())
        if self._conn is not None:
            # Transport dropped underneath us: release it and its channels first
            await self.disconnect()

        options = self._build_options(validate_timeout(timeout))
        checking = self._config[HOST_KEY_CHECKING].strip().lower()
        client = _SessionClient(self, accept_unknown=checking == "accept-new")
        emitter = self._engine.emitter
        connect_data = {"host": self._host, "port": self._port, "username": self._username}

        emitter.emit(
            EventType.CONNECT,
            status="initiating",
            host_key_checking=checking,
            auth="password" if self._password is not None else "publickey",
            **connect_data,
        )
        start_ms = time.time() * 1000

        self._lost = False
        self._client = client
        try:
            self._conn = await asyncssh.connect(client_factory=lambda: client, **options)
        except Exception as e:
            self._client = None
            mapped = map_connect_error(e, self._context(), client.result)
            emitter.emit(
                EventType.ERROR,
                error_type=mapped.error_type,
                message=str(mapped),
                **connect_data,
            )
            raise mapped from e

        self._connected_at_ms = time.time() * 1000
        emitter.emit(
            EventType.CONNECT,
            status="connected",
            duration_ms=self._connected_at_ms - start_ms,
            **connect_data,
        )

    async def disconnect(self) -> None:
        """
        Disconnect open channels, then the session. Safe to call repeatedly.

        Close failures are logged and dropped.
        """
        for channel in list(reversed(self._channels)):
            await channel.disconnect()
        self._channels.clear()

        conn, self._conn = self._conn, None
        self._client = None
        if conn is None:
            return

        try:
            conn.close()
            if not self._daemon:
                await conn.wait_closed()
        except Exception as e:
            logger.warning(
                "Error closing session %s@%s:%s: %s",
                self._username, self._host, self._port, e,
                exc_info=True,
            )

        duration_ms = None
        if self._connected_at_ms is not None:
            duration_ms = (time.time() * 1000) - self._connected_at_ms
        self._engine.emitter.emit(
            EventType.DISCONNECT,
            host=self._host,
            port=self._port,
            daemon=self._daemon,
            duration_ms=duration_ms,
        )

    def open_channel(self, channel_type: "ChannelType") -> "Channel":
        """Open a channel of the given type; see scopessh.channel.open_channel."""
        from scopessh.channel import open_channel

        return open_channel(self, channel_type)

    async def __aenter__(self) -> "Session":
        if not self.is_connected:
            await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()

    def __repr__(self) -> str:
        state = "connected" if self.is_connected else "disconnected"
        return f"<Session {self._username}@{self._host}:{self._port} {state}>"


def map_connect_error(
    exc: Exception,
    ctx: ErrorContext,
    host_key_result: HostKeyResult | None = None,
) -> SSHError:
    """Map asyncssh/OS connect failures to the scopessh error taxonomy."""
    ctx.original_error = str(exc)

    if isinstance(exc, SSHError):
        return exc

    if isinstance(exc, asyncssh.PermissionDenied):
        return AuthFailed(f"Authentication failed: {exc}", context=ctx)

    if isinstance(exc, asyncssh.HostKeyNotVerifiable):
        if host_key_result is not None:
            ctx.extra["host_key"] = host_key_result.value
        return HostKeyMismatch(f"Host key verification failed: {exc}", context=ctx)

    if isinstance(exc, asyncssh.KeyExchangeFailed):
        return NoMutualKex(f"Key exchange failed: {exc}", context=ctx)

    if isinstance(exc, asyncssh.ConnectionLost):
        return SSHConnectionError(f"Connection lost: {exc}", context=ctx)

    if isinstance(exc, asyncio.TimeoutError):
        return ConnectionTimeout(f"Connection timed out: {exc}", context=ctx)

    if isinstance(exc, OSError):
        error_str = str(exc).lower()
        if isinstance(exc, ConnectionRefusedError) or "connection refused" in error_str:
            return ConnectionRefused(f"Connection refused: {exc}", context=ctx)
        if "timed out" in error_str or "timeout" in error_str:
            return ConnectionTimeout(f"Connection timed out: {exc}", context=ctx)
        if "unreachable" in error_str or "no route" in error_str:
            return HostUnreachable(f"Host unreachable: {exc}", context=ctx)
        return SSHConnectionError(f"Connection failed: {exc}", context=ctx)

    if isinstance(exc, asyncssh.Error):
        return SSHConnectionError(f"Connection failed: {exc}", context=ctx)

    return SSHConnectionError(f"Unexpected connect error: {exc!r}", context=ctx)


def create_session(
    engine: "SSHEngine",
    host: str,
    username: str,
    password: str = "",
    port: int = DEFAULT_SSH_PORT,
    daemon: bool = False,
    properties: Mapping[str, str] | None = None,
    customize: Callable[[Session], None] | None = None,
) -> Session:
    """
    Create an unconnected Session.

    Args:
        engine: Engine providing identity and trust store
        host: SSH server hostname or IP
        username: Login name
        password: Password; only set when non-blank, otherwise key auth
        port: SSH port (default 22)
        daemon: Daemon lifetime flag, see Session.set_daemon_thread
        properties: Session config overlaid on StrictHostKeyChecking=no
        customize: Hook invoked with the session before it is returned

    Raises:
        ConfigResolutionError: If host, username, port or a property is invalid
    """
    host = validate_hostname(host)
    username = validate_username(username)
    port = validate_port(port)

    session = engine.get_session(username, host, port)
    session.set_daemon_thread(daemon)
    session.set_config(properties or {})
    if password and password.strip():
        session.set_password(password)
    if customize is not None:
        customize(session)
    return session


async def with_session(
    session: Session,
    operation: Callable[[Session], Awaitable[T] | T],
    timeout: float = 0,
) -> T:
    """
    Connect the session if needed, run ``operation`` and always disconnect.

    The session is disconnected on every exit path, including when
    ``operation`` raises; that error then propagates unchanged.

    Raises:
        SSHConnectionError: If the session cannot connect
        Exception: Whatever ``operation`` raises
    """
    try:
        if not session.is_connected:
            await session.connect(timeout)
        return await run_operation(operation, session)
    finally:
        await session.disconnect()
