"""Line-oriented panel/agent logging with request-aware client identification."""

from datetime import datetime
import os
import traceback
from flask import request, has_request_context

LOG_ROTATE_MAX_BYTES = 5 * 1024 * 1024
LOG_ROTATE_BACKUP_COUNT = 5


def sanitize_log_fragment(text):
    """Collapse whitespace so one event always stays on one log line."""
    return " ".join(str(text or "").replace("\r", " ").replace("\n", " ").split()).strip()


def get_client_ip(fallback="tunnelpanel"):
    """Resolve the caller IP from proxy headers, or ``fallback`` off-request."""
    if not has_request_context():
        return fallback
    xff = (request.headers.get("X-Forwarded-For") or "").strip()
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return first
    x_real_ip = (request.headers.get("X-Real-IP") or "").strip()
    if x_real_ip:
        return x_real_ip
    direct = (request.remote_addr or "").strip()
    return direct or fallback


def rotate_log_file(path, max_bytes=LOG_ROTATE_MAX_BYTES, backup_count=LOG_ROTATE_BACKUP_COUNT):
    """Shift ``file.N`` backups up by one once ``path`` reaches ``max_bytes``."""
    if max_bytes <= 0 or backup_count <= 0:
        return
    try:
        if not path.exists() or path.stat().st_size < max_bytes:
            return
        for idx in range(backup_count - 1, 0, -1):
            src = path.with_name(f"{path.name}.{idx}")
            if src.exists():
                os.replace(src, path.with_name(f"{path.name}.{idx + 1}"))
        os.replace(path, path.with_name(f"{path.name}.1"))
    except OSError:
        # Rotation problems must never block tunnel control.
        pass


def format_log_line(timestamp, client, component, action, command=None, rejection_message=None):
    """Render one ``<ts> <client> [component/action] detail`` line."""
    safe_action = sanitize_log_fragment(action) or "unknown"
    parts = [f"{timestamp} <{sanitize_log_fragment(client) or 'unknown'}> [{component}/{safe_action}]"]
    if command:
        safe_command = sanitize_log_fragment(command)
        if safe_command:
            parts.append(safe_command)
    if rejection_message:
        safe_rejection = sanitize_log_fragment(rejection_message)
        if safe_rejection:
            parts.append(f"rejected: {safe_rejection}")
    return " ".join(parts).strip()


def make_log_action(display_tz, log_dir, log_file, component="tunnelpanel"):
    """Build a ``log_action(action, command=None, rejection_message=None)`` closure."""

    def log_action(action, command=None, rejection_message=None):
        """Append one event line; write failures are swallowed."""
        timestamp = datetime.now(tz=display_tz).strftime("%b %d %H:%M:%S")
        line = format_log_line(timestamp, get_client_ip(), component, action, command, rejection_message)
        if not line:
            return
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            rotate_log_file(log_file)
            with log_file.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            pass

    return log_action


def make_log_exception(log_action):
    """Build an exception logger that reports through ``log_action``."""

    def log_exception(context, exc):
        """Log exception type, message and a truncated one-line traceback."""
        exc_name = type(exc).__name__ if exc is not None else "Exception"
        exc_text = sanitize_log_fragment(str(exc) if exc is not None else "")
        tb = ""
        if exc is not None:
            tb = sanitize_log_fragment(" | ".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
        message = f"{context}: {exc_name}"
        if exc_text:
            message += f": {exc_text}"
        if tb:
            message += f" | traceback: {tb[:700]}"
        log_action("error", rejection_message=message)

    return log_exception


def build_loggers(display_tz, log_dir, action_log_file, system_log_file):
    """Create the panel action logger, system logger and exception logger."""
    log_panel_action = make_log_action(display_tz, log_dir, action_log_file, component="panel")
    log_panel_system = make_log_action(display_tz, log_dir, system_log_file, component="playit")
    log_panel_exception = make_log_exception(log_panel_system)
    return log_panel_action, log_panel_system, log_panel_exception
