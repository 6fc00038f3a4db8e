"""Persisted agent files: tunnel config, secret file and version sidecar.

Every rewrite goes through render -> validate -> temp file -> ``os.replace``,
and an existing file is copied to ``<name>.bak.<epoch>`` before it is
replaced or removed.
"""

from datetime import datetime, timezone
from pathlib import Path
import json
import os
import re
import shutil
import tempfile
import time
import tomllib

from tunnelpanel.core.errors import ConfigError

SECRET_RE = re.compile(r"^[a-fA-F0-9]{64}$")
DEFAULT_TUNNEL_NAME = "Minecraft Server"


def _toml_string(value):
    """Quote a value as a TOML basic string."""
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def render_agent_config(secret_path, port, tunnel_name=DEFAULT_TUNNEL_NAME, proto="tcp"):
    """Return the agent config text for one local TCP tunnel."""
    return (
        "[agent]\n"
        f"secret_path = {_toml_string(secret_path)}\n"
        "\n"
        "[[tunnels]]\n"
        f"name = {_toml_string(tunnel_name)}\n"
        f"proto = {_toml_string(proto)}\n"
        f"port = {int(port)}\n"
    )


def parse_agent_config(text):
    """Parse and validate agent config text; raise ``ConfigError`` when bad."""
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"config is not valid TOML: {exc}") from exc
    agent = data.get("agent")
    if not isinstance(agent, dict) or not isinstance(agent.get("secret_path"), str):
        raise ConfigError("config is missing [agent] secret_path")
    tunnels = data.get("tunnels")
    if not isinstance(tunnels, list) or not tunnels:
        raise ConfigError("config has no [[tunnels]] entries")
    for tunnel in tunnels:
        if not isinstance(tunnel, dict):
            raise ConfigError("tunnel entry is not a table")
        if not isinstance(tunnel.get("name"), str) or not isinstance(tunnel.get("proto"), str):
            raise ConfigError("tunnel entry needs name and proto")
        port = tunnel.get("port")
        if not isinstance(port, int) or not 0 < port < 65536:
            raise ConfigError("tunnel entry needs a valid port")
    return data


def backup_file(path, now=None):
    """Copy ``path`` to ``<path>.bak.<epoch>`` and return the backup path."""
    path = Path(path)
    stamp = int(now if now is not None else time.time())
    backup = path.with_name(f"{path.name}.bak.{stamp}")
    suffix = 1
    while backup.exists():
        backup = path.with_name(f"{path.name}.bak.{stamp}.{suffix}")
        suffix += 1
    shutil.copy2(path, backup)
    return backup


def write_text_atomic(path, text):
    """Write ``text`` next to ``path`` and atomically move it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def ensure_agent_config(config_path, secret_path, port, log=None, now=None):
    """Create the agent config, or back up and regenerate a malformed one.

    Returns True when a valid config is in place afterwards.
    """
    config_path = Path(config_path)
    text = render_agent_config(secret_path, port)
    parse_agent_config(text)

    if not config_path.exists():
        write_text_atomic(config_path, text)
        if log:
            log("Created PlayIt configuration file")
        return True

    try:
        existing = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        if log:
            log(f"Failed to read PlayIt configuration: {exc}", error=True)
        return False

    try:
        parse_agent_config(existing)
        return True
    except ConfigError as exc:
        if log:
            log(f"Config file exists but appears invalid ({exc}), recreating...", error=True)

    backup = backup_file(config_path, now=now)
    write_text_atomic(config_path, text)
    if log:
        log(f"Recreated PlayIt configuration file (previous copy: {backup.name})")
    return True


def write_secret_file(secret_path, secret, now=None):
    """Persist ``secret_key`` after validating it; the old file is backed up."""
    secret = (secret or "").strip()
    if not SECRET_RE.match(secret):
        raise ConfigError("secret must be a 64 character hex string")
    text = f"secret_key = {_toml_string(secret)}\n"
    secret_path = Path(secret_path)
    if secret_path.exists():
        backup_file(secret_path, now=now)
    write_text_atomic(secret_path, text)
    return secret_path


def read_secret_file(secret_path, now=None):
    """Return the stored secret or None; a corrupt file is backed up and removed."""
    secret_path = Path(secret_path)
    try:
        text = secret_path.read_text(encoding="utf-8")
    except OSError:
        return None
    try:
        secret = tomllib.loads(text).get("secret_key")
    except tomllib.TOMLDecodeError:
        secret = None
    if isinstance(secret, str) and SECRET_RE.match(secret):
        return secret
    backup_file(secret_path, now=now)
    secret_path.unlink()
    return None


def clear_secret_file(secret_path, now=None):
    """Back up and remove the persisted secret; returns True if one existed."""
    secret_path = Path(secret_path)
    if not secret_path.exists():
        return False
    backup_file(secret_path, now=now)
    secret_path.unlink()
    return True


def read_version_info(version_path, now=None):
    """Return ``{version, updated}`` from the sidecar file, or None."""
    version_path = Path(version_path)
    try:
        raw = version_path.read_text(encoding="utf-8")
    except OSError:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("version"), str) and data["version"].strip():
        return data
    backup_file(version_path, now=now)
    version_path.unlink()
    return None


def save_version_info(version_path, version, now=None):
    """Write ``{version, updated}`` for the installed agent binary."""
    moment = datetime.fromtimestamp(now, tz=timezone.utc) if now is not None else datetime.now(tz=timezone.utc)
    payload = {"version": str(version), "updated": moment.isoformat()}
    write_text_atomic(version_path, json.dumps(payload) + "\n")
    return payload
