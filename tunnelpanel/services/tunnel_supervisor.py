"""Tunnel agent lifecycle supervisor.

The supervisor owns the ``TunnelSession`` and is the only writer of it.
Agent output flows handle -> ``output_parser.feed`` -> ``_apply_event``;
every domain event is published to the ``EventHub`` while the supervisor
lock is held, so subscribers observe events in the order they happened.

Backend calls that may block (``spawn``, ``stop``, ``is_alive``) run with
the lock released. Handle callbacks are registered with the lock released
too, because the handle invokes them while holding its own dispatch lock.
"""

from collections import deque
from datetime import datetime, timezone
import os
import threading
import time

from tunnelpanel.core.agent_files import ensure_agent_config, read_secret_file, read_version_info, save_version_info
from tunnelpanel.core.errors import AgentCommandError, PrivilegeError
from tunnelpanel.services import agent_events as ev
from tunnelpanel.services import output_parser
from tunnelpanel.services.binary_locator import RELEASE_FETCH_ATTEMPTS, fetch_latest_release, resolve_agent_binary
from tunnelpanel.state import ALLOWED_TRANSITIONS, AgentBinary, LogEntry, TunnelSession, TunnelStatus

INSTALL_BACKOFF_CAP_SECONDS = 30.0

ALREADY_RUNNING_MESSAGE = "PlayIt is already running or starting"
ALREADY_STOPPED_MESSAGE = "PlayIt is already stopped"


def _daemon_timer(delay_seconds, func):
    timer = threading.Timer(delay_seconds, func)
    timer.daemon = True
    return timer


def _noop_log_action(action, command=None, rejection_message=None):
    return None


def _noop_log_exception(context, exc):
    return None


class TunnelSupervisor:
    """Owns the agent process, its status machine and the restart policy."""

    def __init__(
        self,
        settings,
        backend,
        hub,
        *,
        locate=resolve_agent_binary,
        fetch_release=fetch_latest_release,
        clock=time.time,
        sleep=time.sleep,
        timer_factory=_daemon_timer,
        log_action=None,
        log_exception=None,
    ):
        self.settings = settings
        self.backend = backend
        self.hub = hub
        self._locate = locate
        self._fetch_release = fetch_release
        self._clock = clock
        self._sleep = sleep
        self._timer_factory = timer_factory
        self._log_action = log_action or _noop_log_action
        self._log_exception = log_exception or _noop_log_exception

        self._lock = threading.RLock()
        self.session = TunnelSession()
        self._logs = deque(maxlen=max(1, int(settings.max_logs)))
        self._binary = None
        self._handle = None
        self._parser_state = output_parser.ParserState()
        self._restart_timer = None
        self._timer_token = 0
        self._shutdown_requested = False
        self._start_in_progress = False
        self._stall_restart_issued = False
        self.last_tunnels = []
        self.latest_version = None

        self._monitor_stop = threading.Event()
        self._monitor_thread = None

    # ------------------------------------------------------------------
    # logging and publishing

    def _timestamp(self):
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    def _append_log(self, source, message):
        entry = LogEntry(timestamp=self._timestamp(), source=source, message=str(message))
        with self._lock:
            self._logs.append(entry)
            self.hub.publish(ev.LogAppended(entry=entry.to_dict()))
        if source == "system":
            self._log_action("system", command=entry.message)
        elif source == "error":
            self._log_action("error", rejection_message=entry.message)
        return entry

    def _log_system(self, message):
        return self._append_log("system", message)

    def _log_error(self, message):
        return self._append_log("error", message)

    def _report_error(self, message):
        """Log an operation failure and publish it as an ``error`` event."""
        self.emit(ev.AgentError(message=message))

    def _locator_log(self, message, error=False):
        if error:
            self._log_error(message)
        else:
            self._log_system(message)

    def _publish(self, event):
        with self._lock:
            return self.hub.publish(event)

    def _set_status(self, status):
        """Apply a status transition; disallowed transitions are logged and ignored."""
        with self._lock:
            current = self.session.status
            if status is current:
                return True
            if status not in ALLOWED_TRANSITIONS[current]:
                self._log_error(f"Rejected status transition {current.value} -> {status.value}")
                return False
            self.session.status = status
            self.hub.publish(ev.StatusChange(status=status.value))
            return True

    # ------------------------------------------------------------------
    # event application

    def emit(self, event):
        """Record and publish an event produced outside the agent's output stream."""
        with self._lock:
            self._apply_event(event)

    def _apply_event(self, event):
        session = self.session
        if isinstance(event, ev.AgentOutput):
            # Raw lines reach subscribers as ``log`` events.
            self._append_log("agent", event.line)
            return
        if isinstance(event, ev.TunnelCreated):
            if event.url == session.tunnel_url:
                return
            session.tunnel_url = event.url
            self._log_system(f"Tunnel created: {event.url}")
            self.hub.publish(event)
            if session.status is TunnelStatus.STARTING and self._set_status(TunnelStatus.RUNNING):
                session.running_since = self._clock()
            return
        if isinstance(event, ev.AuthRequired):
            if event.url == session.auth_url:
                return
            session.auth_url = event.url
            self._log_system(f"Authentication required: {event.url}")
        elif isinstance(event, ev.Claim):
            session.claim = {"code": event.code, "url": event.url}
        elif isinstance(event, ev.Secret):
            path = event.path or str(self.settings.secret_path)
            session.secret = {"path": path, "key": event.key}
            event = ev.Secret(key=event.key, path=path)
        elif isinstance(event, ev.Tunnels):
            self.last_tunnels = list(event.tunnels)
        elif isinstance(event, ev.AgentError):
            self._log_error(event.message)
        elif isinstance(event, ev.AgentWarning):
            self._log_system(f"Warning: {event.message}")
        self.hub.publish(event)

    # ------------------------------------------------------------------
    # handle callbacks

    def _on_data(self, handle, chunk):
        with self._lock:
            if handle is not self._handle:
                return
            self._parser_state, events = output_parser.feed(self._parser_state, chunk)
            for event in events:
                self._apply_event(event)

    def _on_exit(self, handle, exit_code):
        with self._lock:
            if handle is not self._handle:
                return
            self._parser_state, events = output_parser.flush(self._parser_state)
            for event in events:
                self._apply_event(event)
            self._handle = None
            self.session.last_exit_code = exit_code
            if self._shutdown_requested:
                return
            self._handle_unexpected_exit(exit_code)

    def _handle_unexpected_exit(self, exit_code):
        session = self.session
        started_at = session.started_at
        uptime = int(self._clock() - started_at) if started_at else 0
        session.clear_run_fields()
        self._log_error(f"PlayIt process exited unexpectedly with code {exit_code}")
        self.hub.publish(ev.Stopped(exit_code=exit_code, uptime=uptime))

        settings = self.settings
        if settings.auto_restart and session.restart_attempts < settings.max_restart_attempts:
            session.restart_attempts += 1
            delays = settings.restart_delays_ms
            delay_ms = delays[min(session.restart_attempts - 1, len(delays) - 1)]
            self._log_system(
                f"Auto-restarting PlayIt (attempt {session.restart_attempts}/{settings.max_restart_attempts}) "
                f"in {delay_ms / 1000:g} seconds..."
            )
            self._set_status(TunnelStatus.RESTARTING)
            self._schedule_restart(delay_ms)
            return
        if settings.auto_restart:
            self._log_error(f"Maximum restart attempts ({settings.max_restart_attempts}) reached. Not restarting.")
        self._set_status(TunnelStatus.ERROR)

    # ------------------------------------------------------------------
    # restart timer

    def _schedule_restart(self, delay_ms):
        self._cancel_restart_timer()
        token = self._timer_token
        timer = self._timer_factory(delay_ms / 1000.0, lambda: self._restart_from_timer(token))
        self._restart_timer = timer
        timer.start()

    def _cancel_restart_timer(self):
        with self._lock:
            self._timer_token += 1
            timer, self._restart_timer = self._restart_timer, None
        if timer is not None:
            timer.cancel()

    def has_pending_restart(self):
        with self._lock:
            return self._restart_timer is not None

    def _restart_from_timer(self, token):
        with self._lock:
            if token != self._timer_token or self._shutdown_requested:
                return None
            self._restart_timer = None
            if self._start_in_progress or self.session.status is not TunnelStatus.RESTARTING:
                return None
            self._start_in_progress = True
        try:
            result = self._launch(from_timer=True)
        except Exception as exc:
            self._log_exception("auto_restart", exc)
            result = self._abort_start(True, f"Failed to auto-restart: {exc}")
        finally:
            with self._lock:
                self._start_in_progress = False
        return result

    # ------------------------------------------------------------------
    # start / stop / restart

    def start(self):
        """Start the agent; returns ``{"success", "message"}``."""
        with self._lock:
            if self._start_in_progress or self.session.status in (TunnelStatus.RUNNING, TunnelStatus.STARTING):
                return {"success": False, "message": ALREADY_RUNNING_MESSAGE}
            self._start_in_progress = True
            self._shutdown_requested = False
            if self.session.status is TunnelStatus.ERROR:
                self.session.restart_attempts = 0
        self._cancel_restart_timer()
        try:
            return self._launch(from_timer=False)
        finally:
            with self._lock:
                self._start_in_progress = False

    def _abort_start(self, from_timer, message):
        self._report_error(message)
        if from_timer:
            self._set_status(TunnelStatus.ERROR)
        return {"success": False, "message": message}

    def _resolve_binary(self):
        """Return ``(AgentBinary | None, error)``, retrying transient install failures."""
        with self._lock:
            if self._binary is not None:
                return self._binary, None
        settings = self.settings
        attempts = max(1, int(settings.install_retry_attempts)) if settings.auto_install else 1
        error = None
        for attempt in range(attempts):
            result = self._locate(
                auto_install=settings.auto_install,
                install_dir=settings.install_dir,
                log=self._locator_log,
            )
            path = result.get("path")
            if path:
                binary = AgentBinary(absolute_path=str(path), verified_executable=os.access(path, os.X_OK))
                if result.get("version"):
                    save_version_info(settings.version_path, result["version"])
                with self._lock:
                    self._binary = binary
                return binary, None
            error = result.get("error") or "PlayIt binary not found"
            if attempt + 1 < attempts:
                self._log_system(f"Binary resolution failed ({error}), retrying...")
                self._sleep(min(2 ** attempt, INSTALL_BACKOFF_CAP_SECONDS))
        return None, error

    def agent_binary_path(self):
        """Resolved agent path for one-shot commands; raises when unavailable."""
        binary, error = self._resolve_binary()
        if binary is None:
            raise AgentCommandError(f"PlayIt binary unavailable: {error}")
        return binary.absolute_path

    def load_persisted_secret(self):
        """Pick up a secret saved by an earlier login; corrupt files are set aside."""
        secret_path = self.settings.secret_path
        had_file = secret_path.exists()
        secret = read_secret_file(secret_path)
        with self._lock:
            if secret:
                self.session.secret = {"path": str(secret_path), "key": secret}
            else:
                self.session.secret = None
        if had_file and not secret:
            self._log_error(f"Secret file {secret_path} was malformed; backed up and removed")
        return secret is not None

    def _launch(self, from_timer):
        settings = self.settings
        self._log_system("Starting PlayIt...")
        binary, error = self._resolve_binary()
        if binary is None:
            return self._abort_start(from_timer, f"Failed to locate PlayIt binary: {error}")

        try:
            config_ok = ensure_agent_config(
                settings.config_path,
                settings.secret_path,
                settings.minecraft_port,
                log=self._locator_log,
            )
        except OSError as exc:
            config_ok = False
            self._log_error(f"Failed to write PlayIt configuration: {exc}")
        if not config_ok:
            return self._abort_start(from_timer, "Failed to prepare PlayIt configuration")

        with self._lock:
            if self._shutdown_requested:
                return {"success": False, "message": "Start cancelled by stop request"}
            self.session.clear_run_fields()
            self.session.started_at = self._clock()
            self._stall_restart_issued = False
            self._parser_state = output_parser.ParserState()
            self._set_status(TunnelStatus.STARTING)
            self.hub.publish(ev.Starting())

        try:
            handle = self.backend.spawn(binary.absolute_path, ["--secret_path", str(settings.config_path)])
        except (PrivilegeError, AgentCommandError, OSError) as exc:
            message = f"Failed to start PlayIt: {exc}"
            self._report_error(message)
            with self._lock:
                self.session.clear_run_fields()
                self._set_status(TunnelStatus.ERROR)
            return {"success": False, "message": message}

        with self._lock:
            cancelled = self._shutdown_requested
            if not cancelled:
                self._handle = handle
        if cancelled:
            self.backend.stop(handle)
            return {"success": False, "message": "Start cancelled by stop request"}

        handle.on_data(lambda chunk: self._on_data(handle, chunk))
        handle.on_exit(lambda code: self._on_exit(handle, code))
        self._log_system(f"PlayIt started ({self.backend.mode} mode)")
        return {"success": True, "message": "PlayIt started"}

    def stop(self):
        """Stop the agent at the user's request; resets the restart budget."""
        return self._stop_agent(user_requested=True)

    def _stop_agent(self, user_requested):
        with self._lock:
            idle = (
                self.session.status is TunnelStatus.STOPPED
                and self._handle is None
                and self._restart_timer is None
                and not self._start_in_progress
            )
            if idle:
                return {"success": False, "message": ALREADY_STOPPED_MESSAGE}
            self._shutdown_requested = True
            handle = self._handle
            started_at = self.session.started_at
        self._cancel_restart_timer()
        self._log_system("Stopping PlayIt...")

        exit_code = None
        if handle is not None:
            try:
                exit_code = self.backend.stop(handle)
            except (PrivilegeError, AgentCommandError) as exc:
                message = f"Failed to stop PlayIt: {exc}"
                self._report_error(message)
                self._set_status(TunnelStatus.ERROR)
                return {"success": False, "message": message}

        with self._lock:
            if self._handle is handle:
                self._handle = None
            uptime = int(self._clock() - started_at) if started_at else 0
            self._parser_state = output_parser.ParserState()
            self.session.clear_run_fields()
            self.session.last_exit_code = exit_code
            if user_requested:
                self.session.restart_attempts = 0
            self._set_status(TunnelStatus.STOPPED)
            self.hub.publish(ev.Stopped(exit_code=exit_code, uptime=uptime, graceful=True))
        self._log_system("PlayIt stopped")
        return {"success": True, "message": "PlayIt stopped"}

    def restart(self):
        """Stop (when anything is active) and start again; same path for both backends."""
        self._log_system("Restarting PlayIt...")
        with self._lock:
            active = (
                self.session.status is not TunnelStatus.STOPPED
                or self._handle is not None
                or self._restart_timer is not None
            )
        if active:
            result = self._stop_agent(user_requested=False)
            if not result["success"]:
                return result
        return self.start()

    # ------------------------------------------------------------------
    # health monitoring

    def health_check_tick(self):
        """Run one health check; returns the restart result when one was issued."""
        with self._lock:
            status = self.session.status
            if status in (TunnelStatus.STOPPED, TunnelStatus.ERROR, TunnelStatus.RESTARTING):
                return None
            if self._start_in_progress:
                return None
            handle = self._handle

        alive = self.backend.is_alive(handle)

        with self._lock:
            if handle is not self._handle or self.session.status is not status:
                return None
            session = self.session
            now = self._clock()
            if not alive:
                if self.backend.mode != "systemd":
                    # Direct mode: the exit callback owns dead processes.
                    return None
                self._log_error("PlayIt health check: managed service not active")
            else:
                if (
                    status is TunnelStatus.RUNNING
                    and session.restart_attempts > 0
                    and session.running_since is not None
                    and now - session.running_since >= self.settings.stable_reset_seconds
                ):
                    session.restart_attempts = 0
                    self._log_system(
                        f"Stable operation for {self.settings.stable_reset_seconds:g} seconds, resetting restart counter"
                    )
                grace = self.settings.tunnel_grace_seconds
                stalled = (
                    session.tunnel_url is None
                    and session.started_at is not None
                    and now - session.started_at > grace
                    and not self._stall_restart_issued
                )
                if not stalled:
                    return None
                self._stall_restart_issued = True
                self._log_error(f"PlayIt is running but no tunnel URL detected after {grace:g}s, restarting...")
        return self.restart()

    def _monitor_loop(self):
        interval = self.settings.health_check_interval_seconds
        while not self._monitor_stop.wait(interval):
            try:
                self.health_check_tick()
            except Exception as exc:
                self._log_exception("health_check", exc)
                self._log_error(f"Error during health check: {exc}")

    def start_health_monitor(self):
        """Start the periodic health check thread once."""
        with self._lock:
            if self._monitor_thread is not None and self._monitor_thread.is_alive():
                return self._monitor_thread
            self._monitor_stop.clear()
            self._monitor_thread = threading.Thread(
                target=self._monitor_loop,
                name="playit-health-check",
                daemon=True,
            )
            self._monitor_thread.start()
            return self._monitor_thread

    def stop_health_monitor(self):
        self._monitor_stop.set()

    # ------------------------------------------------------------------
    # updates

    def current_version(self):
        info = read_version_info(self.settings.version_path)
        return info.get("version") if info else None

    def check_for_updates(self, attempts=RELEASE_FETCH_ATTEMPTS):
        """Compare the installed version with the latest release tag."""
        release = self._fetch_release(attempts=attempts, log=self._locator_log)
        current = self.current_version()
        latest = (release or {}).get("tag_name")
        with self._lock:
            self.latest_version = latest
        if not latest:
            return {
                "success": False,
                "message": "Failed to check for updates",
                "currentVersion": current,
                "latestVersion": None,
                "updateAvailable": False,
            }
        update_available = latest != current
        return {
            "success": True,
            "message": "Update available" if update_available else "PlayIt is up to date",
            "currentVersion": current,
            "latestVersion": latest,
            "updateAvailable": update_available,
        }

    def update_binary(self, restart=False):
        """Stop the agent, reinstall the latest release, optionally start again."""
        with self._lock:
            active = self.session.status is not TunnelStatus.STOPPED or self._handle is not None
        if active:
            result = self._stop_agent(user_requested=False)
            if not result["success"]:
                return result

        self._log_system("Updating PlayIt binary...")
        result = self._locate(
            auto_install=True,
            install_dir=self.settings.install_dir,
            force_update=True,
            log=self._locator_log,
        )
        path = result.get("path")
        if not path:
            message = f"Failed to update PlayIt: {result.get('error') or 'unknown error'}"
            self._report_error(message)
            return {"success": False, "message": message}

        version = result.get("version")
        with self._lock:
            self._binary = AgentBinary(absolute_path=str(path), verified_executable=os.access(path, os.X_OK))
        if version:
            save_version_info(self.settings.version_path, version)
            self._publish(ev.Version(version=version))
        message = f"PlayIt updated to {version or 'latest'}"
        self._log_system(message)

        if restart:
            start_result = self.start()
            if not start_result["success"]:
                return {"success": False, "message": f"{message}, but restart failed: {start_result['message']}"}
        return {"success": True, "message": message, "version": version}

    # ------------------------------------------------------------------
    # read side

    def get_logs(self, limit=None):
        with self._lock:
            entries = list(self._logs)
        if limit is not None:
            limit = max(0, int(limit))
            entries = entries[-limit:] if limit else []
        return [entry.to_dict() for entry in entries]

    def snapshot(self, log_limit=20):
        with self._lock:
            session = self.session
            running = session.status in (TunnelStatus.STARTING, TunnelStatus.RUNNING)
            uptime = int(self._clock() - session.started_at) if running and session.started_at else 0
            binary = self._binary
            return {
                "status": session.status.value,
                "tunnelUrl": session.tunnel_url,
                "authUrl": session.auth_url,
                "uptime": uptime,
                "restartAttempts": session.restart_attempts,
                "maxRestartAttempts": self.settings.max_restart_attempts,
                "claim": dict(session.claim) if session.claim else None,
                "secretPath": (session.secret or {}).get("path"),
                "lastExitCode": session.last_exit_code,
                "mode": self.backend.mode,
                "binaryPath": binary.absolute_path if binary else None,
                "restartPending": self._restart_timer is not None,
                "logs": self.get_logs(log_limit),
            }
