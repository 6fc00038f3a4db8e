"""Typed tunnel runtime state and the strict route-wiring container."""
from dataclasses import dataclass
from collections.abc import Iterator, MutableMapping
from enum import Enum
from typing import Any


class TunnelStatus(str, Enum):
    """Operational status of the tunnel agent."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"
    RESTARTING = "restarting"


ALLOWED_TRANSITIONS = {
    TunnelStatus.STOPPED: frozenset({TunnelStatus.STARTING}),
    TunnelStatus.STARTING: frozenset({
        TunnelStatus.RUNNING,
        TunnelStatus.STOPPED,
        TunnelStatus.ERROR,
        TunnelStatus.RESTARTING,
    }),
    TunnelStatus.RUNNING: frozenset({
        TunnelStatus.STOPPED,
        TunnelStatus.ERROR,
        TunnelStatus.RESTARTING,
    }),
    TunnelStatus.RESTARTING: frozenset({
        TunnelStatus.STARTING,
        TunnelStatus.STOPPED,
        TunnelStatus.ERROR,
    }),
    TunnelStatus.ERROR: frozenset({TunnelStatus.STARTING, TunnelStatus.STOPPED}),
}


@dataclass(frozen=True)
class AgentBinary:
    """Located or installed agent executable."""
    absolute_path: str
    verified_executable: bool


@dataclass(frozen=True)
class LogEntry:
    """One supervisor log line; ``source`` is system, agent or error."""
    timestamp: str
    source: str
    message: str

    def to_dict(self):
        return {"timestamp": self.timestamp, "type": self.source, "message": self.message}


@dataclass
class TunnelSession:
    """Mutable session state; written only by the supervisor."""
    status: TunnelStatus = TunnelStatus.STOPPED
    tunnel_url: str | None = None
    auth_url: str | None = None
    started_at: float | None = None
    running_since: float | None = None
    restart_attempts: int = 0
    claim: dict | None = None
    secret: dict | None = None
    last_exit_code: int | None = None

    def clear_run_fields(self):
        """Reset fields that only describe one agent run."""
        self.tunnel_url = None
        self.auth_url = None
        self.started_at = None
        self.running_since = None


REQUIRED_STATE_KEYS = (
    "EVENT_STREAM_HEARTBEAT_SECONDS",
    "STATUS_LOG_LIMIT",
    "dispatch",
    "event_hub",
    "log_panel_action",
    "log_panel_exception",
    "supervisor",
    "agent_commands",
)
REQUIRED_STATE_KEY_SET = frozenset(REQUIRED_STATE_KEYS)


class PanelState(MutableMapping[str, Any]):
    """Strict runtime mapping with attribute and dict-style access."""

    __slots__ = ("_data",)

    def __init__(self, data: dict[str, Any]):
        missing = [key for key in REQUIRED_STATE_KEYS if key not in data]
        if missing:
            raise KeyError(f"Missing state members: {', '.join(missing)}")
        self._data = {key: data[key] for key in REQUIRED_STATE_KEYS}

    @classmethod
    def from_namespace(cls, namespace: dict[str, Any]) -> "PanelState":
        """Build PanelState from a runtime namespace dictionary."""
        return cls({key: namespace[key] for key in REQUIRED_STATE_KEYS if key in namespace})

    def __getitem__(self, key: str) -> Any:
        try:
            return self._data[key]
        except KeyError as exc:
            raise KeyError(key) from exc

    def __setitem__(self, key: str, value: Any) -> None:
        if key not in REQUIRED_STATE_KEY_SET:
            raise KeyError(key)
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        raise TypeError("PanelState does not support deleting members")

    def __iter__(self) -> Iterator[str]:
        return iter(REQUIRED_STATE_KEYS)

    def __len__(self) -> int:
        return len(REQUIRED_STATE_KEYS)

    def __getattr__(self, name: str) -> Any:
        """Support attribute-style reads used by services."""
        if name in REQUIRED_STATE_KEY_SET:
            return self._data[name]
        raise AttributeError(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "_data":
            object.__setattr__(self, name, value)
            return
        if name in REQUIRED_STATE_KEY_SET:
            self._data[name] = value
            return
        raise AttributeError(name)
