"""scopessh: scoped SSH session and channel lifecycles over asyncssh."""

__version__ = "0.1.0"

from scopessh.channel import (
    AgentForwardingChannel,
    Channel,
    ChannelKind,
    ChannelType,
    DirectTcpIpChannel,
    ExecChannel,
    ForwardedTcpIpChannel,
    SessionChannel,
    SftpChannel,
    ShellChannel,
    SubsystemChannel,
    X11Channel,
    open_channel,
    open_typed_channel,
    resolve_channel_type,
    with_channel,
)
from scopessh.engine import SSHEngine, create_engine
from scopessh.errors import (
    AuthenticationError,
    AuthFailed,
    ConfigResolutionError,
    ConnectionRefused,
    ConnectionTimeout,
    ErrorContext,
    HostKeyMismatch,
    HostUnreachable,
    KeyLoadError,
    KnownHostsLoadError,
    NoMutualKex,
    ProtocolStateError,
    SSHConnectionError,
    SSHError,
    StreamError,
    UnsupportedChannelTypeError,
)
from scopessh.events import Event, EventCollector, EventEmitter, EventType
from scopessh.execution import execute_remote, execute_remote_as_string
from scopessh.resolver import (
    DEFAULT_SSH_PORT,
    ConnectionParams,
    default_key_location,
    default_known_hosts_location,
    merge_session_config,
)
from scopessh.session import Session, create_session, with_session
from scopessh.streams import LineReader, drain_to_string

__all__ = [
    # Engine
    "SSHEngine",
    "create_engine",
    # Session
    "Session",
    "create_session",
    "with_session",
    # Channels
    "Channel",
    "ChannelKind",
    "ChannelType",
    "SessionChannel",
    "ShellChannel",
    "ExecChannel",
    "X11Channel",
    "AgentForwardingChannel",
    "SubsystemChannel",
    "SftpChannel",
    "DirectTcpIpChannel",
    "ForwardedTcpIpChannel",
    "open_channel",
    "open_typed_channel",
    "resolve_channel_type",
    "with_channel",
    # Execution
    "execute_remote",
    "execute_remote_as_string",
    "LineReader",
    "drain_to_string",
    # Config
    "ConnectionParams",
    "DEFAULT_SSH_PORT",
    "default_key_location",
    "default_known_hosts_location",
    "merge_session_config",
    # Errors
    "SSHError",
    "ErrorContext",
    "ConfigResolutionError",
    "KeyLoadError",
    "KnownHostsLoadError",
    "SSHConnectionError",
    "ConnectionRefused",
    "ConnectionTimeout",
    "HostUnreachable",
    "AuthenticationError",
    "AuthFailed",
    "HostKeyMismatch",
    "NoMutualKex",
    "ProtocolStateError",
    "UnsupportedChannelTypeError",
    "StreamError",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventType",
]
