"""Tunnel panel web service: playit.gg agent lifecycle behind Flask.

This app provides:
- Agent binary discovery and installation
- Start/stop/restart with auto-restart backoff and health checks
- Claim/login, tunnel listing and reset commands
- A Server-Sent Events stream of every tunnel event
"""

from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import Flask, has_request_context, request
from werkzeug.exceptions import HTTPException

from tunnelpanel.core.action_logging import build_loggers
from tunnelpanel.core.config import apply_default_flask_config, load_tunnel_settings, resolve_secret_key
from tunnelpanel.core.response_helpers import internal_error_response
from tunnelpanel.core.web_config import WebConfig
from tunnelpanel.routes.playit_routes import register_playit_routes
from tunnelpanel.services import agent_commands
from tunnelpanel.services import bootstrap
from tunnelpanel.services.event_hub import EventHub
from tunnelpanel.services.gateway import dispatch
from tunnelpanel.services.process_driver import build_backend
from tunnelpanel.services.tunnel_supervisor import TunnelSupervisor
from tunnelpanel.state import PanelState

APP_DIR = Path(__file__).resolve().parent.parent
app = Flask(__name__)
WEB_CONF_PATH = APP_DIR / "tunnelpanel.env"
_WEB_CFG = WebConfig(WEB_CONF_PATH, APP_DIR)
_cfg_str = _WEB_CFG.get_str
_cfg_int = _WEB_CFG.get_int
_cfg_float = _WEB_CFG.get_float
_cfg_path = _WEB_CFG.get_path

app.config["SECRET_KEY"] = resolve_secret_key(_cfg_str, "TUNNELPANEL_SECRET_KEY", "FLASK_SECRET_KEY")
apply_default_flask_config(app)

DATA_DIR = _cfg_path("DATA_DIR", APP_DIR / "data")
LOG_DIR = _cfg_path("TUNNELPANEL_LOG_DIR", APP_DIR / "logs")
ACTION_LOG_FILE = LOG_DIR / "tunnelpanel-actions.log"
SYSTEM_LOG_FILE = LOG_DIR / "tunnelpanel-system.log"
try:
    DISPLAY_TZ = ZoneInfo(_cfg_str("DISPLAY_TZ", "UTC"))
except (ZoneInfoNotFoundError, ValueError):
    DISPLAY_TZ = ZoneInfo("UTC")
log_panel_action, log_panel_system, log_panel_exception = build_loggers(
    DISPLAY_TZ, LOG_DIR, ACTION_LOG_FILE, SYSTEM_LOG_FILE
)

SERVER_PROPERTIES_CANDIDATES = [
    Path("/opt/Minecraft/server.properties"),
    Path("/opt/Minecraft/server/server.properties"),
    APP_DIR / "server.properties",
    APP_DIR.parent / "server.properties",
]
SETTINGS = load_tunnel_settings(_WEB_CFG, DATA_DIR, SERVER_PROPERTIES_CANDIDATES)

EVENT_BUFFER_SIZE = _cfg_int("EVENT_BUFFER_SIZE", 500, minimum=10)
EVENT_STREAM_HEARTBEAT_SECONDS = _cfg_float("EVENT_STREAM_HEARTBEAT_SECONDS", 15.0, minimum=1.0)
STATUS_LOG_LIMIT = _cfg_int("STATUS_LOG_LIMIT", 20, minimum=1)

event_hub = EventHub(buffer_size=EVENT_BUFFER_SIZE)
supervisor = TunnelSupervisor(
    SETTINGS,
    build_backend(SETTINGS),
    event_hub,
    log_action=log_panel_system,
    log_exception=log_panel_exception,
)


@app.errorhandler(Exception)
def _unhandled_exception_handler(exc):
    # HTTP errors (404, 405...) keep their own status codes.
    if isinstance(exc, HTTPException):
        return exc
    path = request.path if has_request_context() else "unknown-path"
    log_panel_exception(f"unhandled_exception path={path}", exc)
    return internal_error_response()


# ----------------------------
# Flask routes
# ----------------------------
STATE = PanelState.from_namespace(globals())
register_playit_routes(app, STATE)


def run_server():
    """Load persisted agent state, start health checks and serve HTTP."""
    log_panel_system(
        "settings",
        command=f"mode={'systemd' if SETTINGS.use_systemd else 'direct'} port={SETTINGS.minecraft_port}",
    )
    boot_steps = [
        ("load-secret", supervisor.load_persisted_secret),
        ("health-monitor", supervisor.start_health_monitor),
    ]
    shutdown_steps = [
        ("health-monitor", supervisor.stop_health_monitor),
    ]
    if not SETTINGS.use_systemd:
        # Direct-mode agents run in their own session and would outlive the panel.
        shutdown_steps.append(("stop-agent", supervisor.stop))
    bootstrap.run_server(
        app,
        _cfg_str("WEB_HOST", "0.0.0.0"),
        _cfg_int("WEB_PORT", 8080, minimum=1),
        log_panel_action,
        log_panel_exception,
        boot_steps,
        shutdown_steps,
    )


if __name__ == "__main__":
    run_server()
