"""Runtime configuration helpers for the tunnel panel."""

from dataclasses import dataclass, field
from pathlib import Path
import os
import secrets

DEFAULT_MINECRAFT_PORT = 25565
DEFAULT_RESTART_DELAYS_MS = (5000, 10000, 30000)


@dataclass
class TunnelSettings:
    """Resolved settings consumed by the locator, driver and supervisor."""
    config_path: Path
    secret_path: Path
    version_path: Path
    install_dir: Path | None = None
    auto_install: bool = True
    auto_restart: bool = True
    max_restart_attempts: int = 3
    restart_delays_ms: list = field(default_factory=lambda: list(DEFAULT_RESTART_DELAYS_MS))
    use_systemd: bool = False
    sudo_password: str | None = None
    service_name: str = "playit-agent"
    working_dir: Path | None = None
    minecraft_port: int = DEFAULT_MINECRAFT_PORT
    max_logs: int = 100
    health_check_interval_seconds: float = 30.0
    tunnel_grace_seconds: float = 30.0
    stable_reset_seconds: float = 300.0
    stop_timeout_seconds: float = 5.0
    command_timeout_seconds: float = 30.0
    install_retry_attempts: int = 3
    claim_exchange_delay_seconds: float = 3.0
    claim_exchange_timeout_seconds: float = 300.0

    @property
    def unit_name(self):
        """Return the systemd unit file name for managed-service mode."""
        name = self.service_name
        return name if name.endswith(".service") else f"{name}.service"


def resolve_secret_key(cfg_get_str, *env_names):
    """Resolve secret key from env/config with secure fallback."""
    for name in env_names:
        value = (os.environ.get(name) or "").strip()
        if value:
            return value
    configured = (cfg_get_str("TUNNELPANEL_SECRET_KEY", "") or "").strip()
    if configured:
        return configured
    return secrets.token_hex(32)


def apply_default_flask_config(app):
    """Apply baseline Flask runtime config values."""
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["JSON_SORT_KEYS"] = False


def _parse_server_properties_kv(text):
    """Parse KEY=VALUE lines from server.properties style content."""
    kv = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        kv[key.strip()] = value.strip()
    return kv


def detect_minecraft_port(candidates, default=DEFAULT_MINECRAFT_PORT):
    """Return ``server-port`` from the first readable server.properties."""
    for path in candidates:
        candidate = Path(path)
        if not candidate.exists():
            continue
        try:
            text = candidate.read_text(encoding="utf-8", errors="ignore")
        except OSError:
            continue
        raw_port = _parse_server_properties_kv(text).get("server-port", "")
        try:
            port = int(raw_port)
        except ValueError:
            return default
        if 0 < port < 65536:
            return port
        return default
    return default


def load_tunnel_settings(cfg, data_dir, server_properties_candidates=()):
    """Build ``TunnelSettings`` from a ``WebConfig`` instance."""
    data_dir = Path(data_dir)
    use_systemd = cfg.get_bool("PLAYIT_USE_SYSTEMD", False)
    sudo_password = cfg.get_str("PLAYIT_SUDO_PASSWORD", "") or None
    install_dir_raw = cfg.get_str("PLAYIT_INSTALL_DIR", "")
    install_dir = cfg.get_path("PLAYIT_INSTALL_DIR", data_dir) if install_dir_raw else None

    minecraft_port = cfg.get_int("MINECRAFT_PORT", 0, minimum=0)
    if not minecraft_port or minecraft_port > 65535:
        minecraft_port = detect_minecraft_port(server_properties_candidates)

    # systemd startup is slower to surface the tunnel address in the journal.
    default_grace = 60.0 if use_systemd else 30.0

    return TunnelSettings(
        config_path=cfg.get_path("PLAYIT_CONFIG_PATH", data_dir / "playit.toml"),
        secret_path=cfg.get_path(
            "PLAYIT_SECRET_PATH",
            Path.home() / ".config" / "playit_gg" / "playit.toml",
        ),
        version_path=cfg.get_path("PLAYIT_VERSION_PATH", data_dir / "playit-version.json"),
        install_dir=install_dir,
        auto_install=cfg.get_bool("PLAYIT_AUTO_INSTALL", True),
        auto_restart=cfg.get_bool("PLAYIT_AUTO_RESTART", True),
        max_restart_attempts=cfg.get_int("PLAYIT_MAX_RESTART_ATTEMPTS", 3, minimum=0),
        restart_delays_ms=cfg.get_int_list("PLAYIT_RESTART_DELAYS_MS", DEFAULT_RESTART_DELAYS_MS),
        use_systemd=use_systemd,
        sudo_password=sudo_password,
        service_name=cfg.get_str("PLAYIT_SERVICE_NAME", "playit-agent"),
        working_dir=data_dir,
        minecraft_port=minecraft_port,
        max_logs=cfg.get_int("PLAYIT_MAX_LOGS", 100, minimum=1),
        health_check_interval_seconds=cfg.get_float("PLAYIT_HEALTH_CHECK_INTERVAL_SECONDS", 30.0, minimum=1.0),
        tunnel_grace_seconds=cfg.get_float("PLAYIT_TUNNEL_GRACE_SECONDS", default_grace, minimum=1.0),
        stable_reset_seconds=cfg.get_float("PLAYIT_STABLE_RESET_SECONDS", 300.0, minimum=1.0),
        stop_timeout_seconds=cfg.get_float("PLAYIT_STOP_TIMEOUT_SECONDS", 5.0, minimum=0.5),
        command_timeout_seconds=cfg.get_float("PLAYIT_COMMAND_TIMEOUT_SECONDS", 30.0, minimum=1.0),
        install_retry_attempts=cfg.get_int("PLAYIT_INSTALL_RETRY_ATTEMPTS", 3, minimum=1),
        claim_exchange_delay_seconds=cfg.get_float("PLAYIT_CLAIM_EXCHANGE_DELAY_SECONDS", 3.0, minimum=0.0),
        claim_exchange_timeout_seconds=cfg.get_float("PLAYIT_CLAIM_EXCHANGE_TIMEOUT_SECONDS", 300.0, minimum=1.0),
    )
