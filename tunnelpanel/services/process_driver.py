"""Agent process execution backends (direct pseudo-terminal or systemd unit)."""

import os
import pty
import shlex
import signal
import subprocess
import tempfile
import threading
import time

from tunnelpanel.core.errors import AgentCommandError, PrivilegeError

READ_CHUNK_BYTES = 4096
STOP_POLL_INTERVAL_SECONDS = 0.5
FORCE_KILL_WAIT_SECONDS = 2.0
JOURNAL_RESPAWN_DELAY_SECONDS = 5.0
SYSTEMD_UNIT_DIR = "/etc/systemd/system"


def run_command(cmd, timeout, input_text=None):
    """Run ``cmd`` with a hard timeout; launch failures raise ``AgentCommandError``."""
    try:
        return subprocess.run(
            cmd,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise AgentCommandError(f"Command timed out after {timeout:.0f}s: {' '.join(map(str, cmd))}") from exc
    except OSError as exc:
        raise AgentCommandError(f"Command could not be started: {' '.join(map(str, cmd))}: {exc}") from exc


def run_sudo(cmd, sudo_password, timeout):
    """Run a privileged command by piping the sudo password on stdin."""
    if not sudo_password:
        raise PrivilegeError("sudo password unavailable: set PLAYIT_SUDO_PASSWORD for managed-service mode")
    return run_command(["sudo", "-S", "-p", ""] + list(cmd), timeout, input_text=f"{sudo_password}\n")


def command_detail(result):
    """Return trimmed stderr+stdout of a finished command."""
    return ((result.stderr or "") + "\n" + (result.stdout or "")).strip()[:400]


class ProcessHandle:
    """Callback plumbing shared by every output source.

    Data arriving before a data callback exists is kept and replayed on
    registration; an exit that already happened is reported to late
    ``on_exit`` registrations.
    """

    def __init__(self):
        self._dispatch_lock = threading.RLock()
        self._data_callbacks = []
        self._exit_callbacks = []
        self._backlog = []
        self._exit_code = None
        self._exited = False

    def on_data(self, callback):
        with self._dispatch_lock:
            self._data_callbacks.append(callback)
            backlog, self._backlog = self._backlog, []
            for chunk in backlog:
                callback(chunk)

    def on_exit(self, callback):
        with self._dispatch_lock:
            self._exit_callbacks.append(callback)
            if self._exited:
                callback(self._exit_code)

    def _dispatch_data(self, chunk):
        with self._dispatch_lock:
            if not self._data_callbacks:
                self._backlog.append(chunk)
                return
            for callback in list(self._data_callbacks):
                callback(chunk)

    def _dispatch_exit(self, exit_code):
        with self._dispatch_lock:
            self._exit_code = exit_code
            self._exited = True
            for callback in list(self._exit_callbacks):
                callback(exit_code)

    @property
    def exited(self):
        return self._exited


class PtyProcessHandle(ProcessHandle):
    """Child process attached to a pseudo terminal with one reader thread."""

    def __init__(self, argv, cwd=None, env=None, popen=subprocess.Popen):
        super().__init__()
        master_fd, slave_fd = pty.openpty()
        try:
            self.proc = popen(
                list(argv),
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(cwd) if cwd else None,
                env=env,
                start_new_session=True,
                close_fds=True,
            )
        except OSError:
            os.close(master_fd)
            os.close(slave_fd)
            raise
        os.close(slave_fd)
        self.master_fd = master_fd
        self.argv = list(argv)
        self._reader = threading.Thread(target=self._read_loop, name=f"pty-reader-{self.proc.pid}", daemon=True)
        self._reader.start()

    @property
    def pid(self):
        return self.proc.pid

    def _read_loop(self):
        while True:
            try:
                data = os.read(self.master_fd, READ_CHUNK_BYTES)
            except OSError:
                # Linux reports EIO once the child side of the pty is gone.
                break
            if not data:
                break
            self._dispatch_data(data)
        exit_code = self.proc.wait()
        try:
            os.close(self.master_fd)
        except OSError:
            pass
        self._dispatch_exit(exit_code)

    def poll(self):
        return self.proc.poll()

    def wait(self, timeout=None):
        try:
            return self.proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def kill(self, sig=signal.SIGTERM):
        """Signal the agent's process group; already-gone processes are ignored."""
        if self.proc.poll() is not None:
            return
        try:
            os.killpg(self.proc.pid, sig)
        except ProcessLookupError:
            return
        except PermissionError:
            self.proc.send_signal(sig)

    def write(self, text):
        os.write(self.master_fd, str(text).encode("utf-8"))


class JournalTailHandle(ProcessHandle):
    """Follow a unit's journal; a dead ``journalctl`` is respawned until closed.

    With ``since`` (epoch seconds) the first tail starts at that moment, so
    lines from an earlier run of the unit are never replayed.
    """

    def __init__(self, unit, popen=subprocess.Popen, respawn_delay=JOURNAL_RESPAWN_DELAY_SECONDS, since=None):
        super().__init__()
        self.unit = unit
        self._popen = popen
        self._respawn_delay = respawn_delay
        self._since = since
        self._closed = threading.Event()
        self._proc_lock = threading.Lock()
        self._proc = None
        self._thread = threading.Thread(target=self._follow_loop, name=f"journal-{unit}", daemon=True)
        self._thread.start()

    def _tail_command(self, first):
        cmd = ["journalctl", "-u", self.unit, "-f", "-o", "cat", "--no-pager"]
        if first and self._since is not None:
            return cmd + ["--since", f"@{int(self._since)}"]
        # Respawned tails must not replay lines already delivered.
        return cmd + ["-n", "0"]

    def _follow_loop(self):
        first = True
        try:
            while not self._closed.is_set():
                try:
                    proc = self._popen(self._tail_command(first), stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
                except OSError:
                    proc = None
                if proc is not None:
                    first = False
                    with self._proc_lock:
                        self._proc = proc
                    # kill() may have run while popen was starting the tail.
                    if self._closed.is_set():
                        proc.terminate()
                    fd = proc.stdout.fileno()
                    while True:
                        try:
                            data = os.read(fd, READ_CHUNK_BYTES)
                        except OSError:
                            break
                        if not data:
                            break
                        self._dispatch_data(data)
                    proc.wait()
                    with self._proc_lock:
                        self._proc = None
                self._closed.wait(self._respawn_delay)
        finally:
            self._dispatch_exit(0)

    def poll(self):
        return 0 if self._exited else None

    def wait(self, timeout=None):
        self._thread.join(timeout)
        return self.poll()

    def kill(self, sig=signal.SIGTERM):
        self._closed.set()
        with self._proc_lock:
            proc = self._proc
        if proc is not None and proc.poll() is None:
            proc.terminate()

    def write(self, text):
        raise AgentCommandError("managed-service agents do not accept terminal input")


class ExecutionBackend:
    """Strategy for running the agent: spawn, stop, liveness and log source."""

    mode = "abstract"

    def spawn(self, binary_path, args):
        raise NotImplementedError

    def stop(self, handle):
        raise NotImplementedError

    def is_alive(self, handle):
        raise NotImplementedError

    def tail_logs(self, since=None):
        """Return a handle streaming the backend's own log, if it has one."""
        return None


class DirectBackend(ExecutionBackend):
    """Run the agent as a pty-backed child of the panel process."""

    mode = "direct"

    def __init__(self, working_dir=None, stop_timeout=5.0, spawn_handle=PtyProcessHandle, sleep=time.sleep):
        self.working_dir = working_dir
        self.stop_timeout = stop_timeout
        self._spawn_handle = spawn_handle
        self._sleep = sleep

    def spawn(self, binary_path, args):
        env = dict(os.environ)
        env.setdefault("TERM", "xterm-color")
        env["COLUMNS"] = "80"
        env["LINES"] = "30"
        return self._spawn_handle([binary_path] + list(args), cwd=self.working_dir, env=env)

    def stop(self, handle):
        """SIGTERM, bounded polling, then SIGKILL; returns the exit code if known."""
        if handle is None:
            return None
        handle.kill(signal.SIGTERM)
        polls = max(1, int(self.stop_timeout / STOP_POLL_INTERVAL_SECONDS))
        for _ in range(polls):
            code = handle.poll()
            if code is not None:
                return code
            self._sleep(STOP_POLL_INTERVAL_SECONDS)
        handle.kill(signal.SIGKILL)
        return handle.wait(timeout=FORCE_KILL_WAIT_SECONDS)

    def is_alive(self, handle):
        return handle is not None and handle.poll() is None


class ManagedServiceBackend(ExecutionBackend):
    """Run the agent as a systemd unit and follow its journal."""

    mode = "systemd"

    def __init__(
        self,
        unit_name,
        sudo_password,
        working_dir=None,
        command_timeout=30.0,
        unit_dir=SYSTEMD_UNIT_DIR,
        sudo=run_sudo,
        command=run_command,
        tail_factory=JournalTailHandle,
        clock=time.time,
    ):
        self.unit_name = unit_name
        self.sudo_password = sudo_password
        self.working_dir = working_dir
        self.command_timeout = command_timeout
        self.unit_dir = unit_dir
        self._sudo = sudo
        self._command = command
        self._tail_factory = tail_factory
        self._clock = clock

    def _require_privilege(self):
        if not self.sudo_password:
            raise PrivilegeError("Sudo password required for managed-service mode")

    def _sudo_checked(self, cmd, timeout=None):
        result = self._sudo(cmd, self.sudo_password, timeout or self.command_timeout)
        if result.returncode != 0:
            detail = command_detail(result)
            raise AgentCommandError(f"{' '.join(cmd)} failed" + (f": {detail}" if detail else ""))
        return result

    def render_unit(self, binary_path, args):
        exec_start = " ".join(shlex.quote(str(part)) for part in [binary_path] + list(args))
        working_dir = self.working_dir or os.getcwd()
        return (
            "[Unit]\n"
            "Description=PlayIt.gg Agent Service\n"
            "After=network.target\n"
            "StartLimitIntervalSec=300\n"
            "StartLimitBurst=5\n"
            "\n"
            "[Service]\n"
            f"ExecStart={exec_start}\n"
            "Restart=on-failure\n"
            "RestartSec=30\n"
            "User=root\n"
            "Group=root\n"
            "Environment=PATH=/usr/bin:/usr/local/bin\n"
            f"WorkingDirectory={working_dir}\n"
            "StandardOutput=journal\n"
            "StandardError=journal\n"
            "\n"
            "[Install]\n"
            "WantedBy=multi-user.target\n"
        )

    def install_unit(self, binary_path, args):
        """Write the unit through a temp file, then move, reload and enable it."""
        self._require_privilege()
        fd, tmp_path = tempfile.mkstemp(prefix="playit-agent-", suffix=".service")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(self.render_unit(binary_path, args))
            self._sudo_checked(["mv", tmp_path, os.path.join(self.unit_dir, self.unit_name)])
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
        self._sudo_checked(["systemctl", "daemon-reload"])
        self._sudo_checked(["systemctl", "enable", self.unit_name])

    def spawn(self, binary_path, args):
        self._require_privilege()
        self.install_unit(binary_path, args)
        started = self._clock()
        self._sudo_checked(["systemctl", "start", self.unit_name])
        return self.tail_logs(since=started)

    def stop(self, handle):
        self._require_privilege()
        try:
            self._sudo_checked(["systemctl", "stop", self.unit_name])
        finally:
            if handle is not None:
                handle.kill()
        return 0

    def is_alive(self, handle):
        try:
            result = self._command(["systemctl", "is-active", self.unit_name], self.command_timeout)
        except AgentCommandError:
            return False
        return (result.stdout or "").strip() == "active"

    def tail_logs(self, since=None):
        return self._tail_factory(self.unit_name, since=since)


def build_backend(settings):
    """Select the execution strategy once, from settings."""
    if settings.use_systemd:
        return ManagedServiceBackend(
            settings.unit_name,
            settings.sudo_password,
            working_dir=str(settings.working_dir) if settings.working_dir else None,
            command_timeout=settings.command_timeout_seconds,
        )
    return DirectBackend(
        working_dir=str(settings.working_dir) if settings.working_dir else None,
        stop_timeout=settings.stop_timeout_seconds,
    )
