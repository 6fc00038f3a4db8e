"""Closed set of tunnel domain events.

Each event type carries its realtime channel name in ``name`` and renders
its wire payload with ``payload()``. ``DomainEvent`` is the union every
consumer dispatches over.
"""

from dataclasses import dataclass, field
from typing import ClassVar, Union


@dataclass(frozen=True)
class AgentOutput:
    """One cleaned line of agent terminal output."""
    name: ClassVar[str] = "agent_output"
    line: str

    def payload(self):
        return {"line": self.line}


@dataclass(frozen=True)
class Claim:
    name: ClassVar[str] = "claim"
    code: str
    url: str

    def payload(self):
        return {"code": self.code, "url": self.url}


@dataclass(frozen=True)
class Exchanging:
    name: ClassVar[str] = "exchanging"
    code: str

    def payload(self):
        return {"code": self.code}


@dataclass(frozen=True)
class Secret:
    """Session secret; the key itself never goes out on the realtime channel."""
    name: ClassVar[str] = "secret"
    key: str
    path: str | None = None

    def payload(self):
        return {"path": self.path}


@dataclass(frozen=True)
class SecretPath:
    name: ClassVar[str] = "secret-path"
    path: str

    def payload(self):
        return {"path": self.path}


@dataclass(frozen=True)
class Tunnels:
    name: ClassVar[str] = "tunnels"
    tunnels: tuple = ()

    def payload(self):
        return list(self.tunnels)


@dataclass(frozen=True)
class TunnelCreated:
    name: ClassVar[str] = "tunnel_created"
    url: str

    def payload(self):
        return {"url": self.url}


@dataclass(frozen=True)
class AuthRequired:
    name: ClassVar[str] = "auth_required"
    url: str

    def payload(self):
        return {"url": self.url}


@dataclass(frozen=True)
class Starting:
    name: ClassVar[str] = "starting"

    def payload(self):
        return {}


@dataclass(frozen=True)
class Stopped:
    name: ClassVar[str] = "stopped"
    exit_code: int | None = None
    uptime: int = 0
    graceful: bool = False

    def payload(self):
        return {"exitCode": self.exit_code, "uptime": self.uptime, "graceful": self.graceful}


@dataclass(frozen=True)
class Resetting:
    name: ClassVar[str] = "resetting"

    def payload(self):
        return {}


@dataclass(frozen=True)
class ResetComplete:
    name: ClassVar[str] = "reset-complete"
    exit_code: int | None = None

    def payload(self):
        return {"exitCode": self.exit_code}


@dataclass(frozen=True)
class Version:
    name: ClassVar[str] = "version"
    version: str

    def payload(self):
        return {"version": self.version}


@dataclass(frozen=True)
class Help:
    name: ClassVar[str] = "help"
    text: str

    def payload(self):
        return {"text": self.text}


@dataclass(frozen=True)
class AgentError:
    name: ClassVar[str] = "error"
    message: str
    port_conflict: bool = False

    def payload(self):
        return {"message": self.message, "portConflict": self.port_conflict}


@dataclass(frozen=True)
class AgentWarning:
    name: ClassVar[str] = "warning"
    message: str

    def payload(self):
        return {"message": self.message}


@dataclass(frozen=True)
class StatusChange:
    name: ClassVar[str] = "status_change"
    status: str

    def payload(self):
        return {"status": self.status}


@dataclass(frozen=True)
class LogAppended:
    name: ClassVar[str] = "log"
    entry: dict = field(default_factory=dict)

    def payload(self):
        return {"log": dict(self.entry)}


DomainEvent = Union[
    AgentOutput,
    Claim,
    Exchanging,
    Secret,
    SecretPath,
    Tunnels,
    TunnelCreated,
    AuthRequired,
    Starting,
    Stopped,
    Resetting,
    ResetComplete,
    Version,
    Help,
    AgentError,
    AgentWarning,
    StatusChange,
    LogAppended,
]

EVENT_TYPES = DomainEvent.__args__

# Names republished on the realtime channel; raw agent lines travel as ``log``.
REALTIME_EVENT_NAMES = tuple(cls.name for cls in EVENT_TYPES if cls is not AgentOutput)
