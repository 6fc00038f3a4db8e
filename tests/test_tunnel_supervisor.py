import tempfile
import unittest
from pathlib import Path

from tunnelpanel.core.config import TunnelSettings
from tunnelpanel.core.errors import AgentCommandError, PrivilegeError
from tunnelpanel.services import agent_events as ev
from tunnelpanel.services.event_hub import EventHub
from tunnelpanel.services.tunnel_supervisor import TunnelSupervisor
from tunnelpanel.state import TunnelStatus


class FakeHandle:
    def __init__(self):
        self.data_callbacks = []
        self.exit_callbacks = []
        self.exit_code = None
        self.killed = False

    def on_data(self, callback):
        self.data_callbacks.append(callback)

    def on_exit(self, callback):
        self.exit_callbacks.append(callback)

    def send(self, data):
        for callback in list(self.data_callbacks):
            callback(data)

    def finish(self, code):
        self.exit_code = code
        for callback in list(self.exit_callbacks):
            callback(code)

    def poll(self):
        return self.exit_code


class FakeBackend:
    def __init__(self, mode="direct"):
        self.mode = mode
        self.alive = True
        self.spawned = []
        self.stopped = []
        self.stop_error = None
        self.spawn_error = None

    def spawn(self, binary_path, args):
        if self.spawn_error:
            raise self.spawn_error
        handle = FakeHandle()
        self.spawned.append((binary_path, list(args), handle))
        return handle

    def stop(self, handle):
        if self.stop_error:
            raise self.stop_error
        self.stopped.append(handle)
        handle.finish(0)
        return 0

    def is_alive(self, handle):
        return self.alive

    @property
    def last_handle(self):
        return self.spawned[-1][2]


class FakeTimer:
    def __init__(self, delay, func):
        self.delay = delay
        self.func = func
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        return self.func()


def _found(**kwargs):
    return {"path": "/opt/playit/playit", "installed": True, "error": None, "version": None}


class SupervisorTestCase(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.root = Path(tmp.name)
        self.now = [1000.0]
        self.timers = []
        self.sleeps = []
        self.backend = FakeBackend()
        self.hub = EventHub(buffer_size=2000)

    def make_settings(self, **overrides):
        values = dict(
            config_path=self.root / "playit.toml",
            secret_path=self.root / "playit_gg" / "playit.toml",
            version_path=self.root / "playit-version.json",
            auto_install=False,
        )
        values.update(overrides)
        return TunnelSettings(**values)

    def make_supervisor(self, locate=_found, fetch_release=None, **overrides):
        def _timer(delay, func):
            timer = FakeTimer(delay, func)
            self.timers.append(timer)
            return timer

        return TunnelSupervisor(
            self.make_settings(**overrides),
            self.backend,
            self.hub,
            locate=locate,
            fetch_release=fetch_release or (lambda attempts=3, log=None: None),
            clock=lambda: self.now[0],
            sleep=self.sleeps.append,
            timer_factory=_timer,
        )

    def event_names(self):
        return [name for _, name, _ in self.hub.pending_since(0)[1]]

    def events(self, name):
        return [payload for _, event_name, payload in self.hub.pending_since(0)[1] if event_name == name]


class StartStopTests(SupervisorTestCase):
    def test_start_spawns_agent_with_config(self):
        sup = self.make_supervisor()
        result = sup.start()
        self.assertEqual(result, {"success": True, "message": "PlayIt started"})
        self.assertEqual(sup.session.status, TunnelStatus.STARTING)
        binary, args, _ = self.backend.spawned[0]
        self.assertEqual(binary, "/opt/playit/playit")
        self.assertEqual(args, ["--secret_path", str(self.root / "playit.toml")])
        self.assertTrue((self.root / "playit.toml").exists())
        self.assertIn("starting", self.event_names())
        self.assertEqual(self.events("status_change"), [{"status": "starting"}])

    def test_tunnel_url_moves_to_running(self):
        sup = self.make_supervisor()
        sup.start()
        self.backend.last_handle.send(b"\x1b[32mcool-name.gl.at.ply.gg:12345 => 127.0.0.1:25565\x1b[0m\n")
        self.assertEqual(sup.session.status, TunnelStatus.RUNNING)
        self.assertEqual(sup.session.tunnel_url, "cool-name.gl.at.ply.gg:12345")
        self.assertEqual(sup.session.running_since, 1000.0)
        self.assertEqual(self.events("tunnel_created"), [{"url": "cool-name.gl.at.ply.gg:12345"}])
        # Repeated address lines do not republish.
        self.backend.last_handle.send(b"cool-name.gl.at.ply.gg:12345 => 127.0.0.1:25565\n")
        self.assertEqual(len(self.events("tunnel_created")), 1)

    def test_start_while_starting_or_running_is_rejected(self):
        sup = self.make_supervisor()
        sup.start()
        sup.session.restart_attempts = 2
        second = sup.start()
        self.assertEqual(second, {"success": False, "message": "PlayIt is already running or starting"})
        self.backend.last_handle.send(b"a.ply.gg:1\n")
        third = sup.start()
        self.assertFalse(third["success"])
        self.assertEqual(len(self.backend.spawned), 1)
        self.assertEqual(sup.session.restart_attempts, 2)

    def test_stop_when_stopped_is_rejected(self):
        sup = self.make_supervisor()
        self.assertEqual(sup.stop(), {"success": False, "message": "PlayIt is already stopped"})
        self.assertEqual(self.event_names(), [])

    def test_stop_is_graceful_and_clears_run_fields(self):
        sup = self.make_supervisor()
        sup.start()
        handle = self.backend.last_handle
        handle.send(b"a.ply.gg:1\n")
        self.now[0] += 42
        result = sup.stop()
        self.assertTrue(result["success"])
        self.assertEqual(self.backend.stopped, [handle])
        self.assertEqual(sup.session.status, TunnelStatus.STOPPED)
        self.assertIsNone(sup.session.tunnel_url)
        self.assertIsNone(sup.session.started_at)
        self.assertEqual(self.events("stopped"), [{"exitCode": 0, "uptime": 42, "graceful": True}])
        # The exit callback during a requested stop must not schedule a restart.
        self.assertEqual(self.timers, [])

    def test_unresolvable_binary_aborts_without_state_change(self):
        def _missing(**kwargs):
            return {"path": None, "installed": False, "error": "Playit binary not found.", "version": None}

        sup = self.make_supervisor(locate=_missing)
        result = sup.start()
        self.assertFalse(result["success"])
        self.assertIn("Playit binary not found.", result["message"])
        self.assertEqual(sup.session.status, TunnelStatus.STOPPED)
        self.assertEqual(self.backend.spawned, [])
        self.assertEqual(self.events("status_change"), [])
        self.assertEqual(self.sleeps, [])
        self.assertEqual(
            self.events("error"),
            [{"message": "Failed to locate PlayIt binary: Playit binary not found.", "portConflict": False}],
        )

    def test_transient_install_errors_are_retried(self):
        outcomes = [
            {"path": None, "installed": False, "error": "Installation failed: timeout", "version": None},
            {"path": None, "installed": False, "error": "Installation failed: timeout", "version": None},
            {"path": "/home/mc/.local/bin/playit", "installed": True, "error": None, "version": "v0.15.26"},
        ]
        calls = []

        def _flaky(**kwargs):
            calls.append(kwargs)
            return outcomes[len(calls) - 1]

        sup = self.make_supervisor(locate=_flaky, auto_install=True)
        self.assertTrue(sup.start()["success"])
        self.assertEqual(len(calls), 3)
        self.assertTrue(all(call["auto_install"] for call in calls))
        self.assertEqual(self.sleeps, [1, 2])
        self.assertEqual(sup.current_version(), "v0.15.26")
        # Resolved once; later starts reuse the cached binary.
        sup.stop()
        sup.start()
        self.assertEqual(len(calls), 3)

    def test_spawn_failure_goes_to_error(self):
        self.backend.spawn_error = PrivilegeError("Sudo password required for managed-service mode")
        sup = self.make_supervisor()
        result = sup.start()
        self.assertFalse(result["success"])
        self.assertIn("Sudo password required", result["message"])
        self.assertEqual(sup.session.status, TunnelStatus.ERROR)
        self.assertEqual([payload["message"] for payload in self.events("error")], [result["message"]])

    def test_stop_privilege_error_reports_failure(self):
        sup = self.make_supervisor()
        sup.start()
        self.backend.stop_error = AgentCommandError("systemctl stop playit-agent.service failed")
        result = sup.stop()
        self.assertFalse(result["success"])
        self.assertEqual(sup.session.status, TunnelStatus.ERROR)
        self.assertIn("Failed to stop PlayIt", self.events("error")[-1]["message"])

    def test_restart_stops_then_starts(self):
        sup = self.make_supervisor()
        sup.start()
        first = self.backend.last_handle
        self.assertTrue(sup.restart()["success"])
        self.assertEqual(self.backend.stopped, [first])
        self.assertEqual(len(self.backend.spawned), 2)
        self.assertEqual(sup.session.status, TunnelStatus.STARTING)

    def test_restart_from_stopped_just_starts(self):
        sup = self.make_supervisor()
        self.assertTrue(sup.restart()["success"])
        self.assertEqual(self.backend.stopped, [])
        self.assertEqual(len(self.backend.spawned), 1)


class AutoRestartTests(SupervisorTestCase):
    def test_backoff_schedule_then_error(self):
        sup = self.make_supervisor(max_restart_attempts=3, restart_delays_ms=[5000, 10000, 30000])
        sup.start()
        for expected_delay in (5.0, 10.0, 30.0):
            self.backend.last_handle.finish(1)
            self.assertEqual(sup.session.status, TunnelStatus.RESTARTING)
            timer = self.timers[-1]
            self.assertEqual(timer.delay, expected_delay)
            self.assertTrue(timer.started)
            timer.fire()
            self.assertEqual(sup.session.status, TunnelStatus.STARTING)
        self.backend.last_handle.finish(1)
        self.assertEqual(sup.session.status, TunnelStatus.ERROR)
        self.assertEqual(len(self.timers), 3)
        self.assertEqual(len(self.backend.spawned), 4)
        self.assertEqual(sup.session.restart_attempts, 3)
        stopped = self.events("stopped")
        self.assertEqual(len(stopped), 4)
        self.assertTrue(all(payload["exitCode"] == 1 and not payload["graceful"] for payload in stopped))

    def test_delay_table_is_capped_at_last_entry(self):
        sup = self.make_supervisor(max_restart_attempts=4, restart_delays_ms=[1000, 2000])
        sup.start()
        delays = []
        for _ in range(3):
            self.backend.last_handle.finish(2)
            delays.append(self.timers[-1].delay)
            self.timers[-1].fire()
        self.assertEqual(delays, [1.0, 2.0, 2.0])

    def test_auto_restart_disabled_goes_to_error(self):
        sup = self.make_supervisor(auto_restart=False)
        sup.start()
        self.backend.last_handle.finish(137)
        self.assertEqual(sup.session.status, TunnelStatus.ERROR)
        self.assertEqual(self.timers, [])
        self.assertEqual(sup.session.last_exit_code, 137)

    def test_stop_cancels_pending_restart(self):
        sup = self.make_supervisor()
        sup.start()
        self.backend.last_handle.finish(1)
        timer = self.timers[-1]
        self.assertTrue(sup.has_pending_restart())
        result = sup.stop()
        self.assertTrue(result["success"])
        self.assertTrue(timer.cancelled)
        self.assertFalse(sup.has_pending_restart())
        self.assertEqual(sup.session.status, TunnelStatus.STOPPED)
        self.assertEqual(sup.session.restart_attempts, 0)
        # A timer thread that already woke up must not start the agent.
        timer.fire()
        self.now[0] += 600
        self.assertIsNone(sup.health_check_tick())
        self.assertEqual(len(self.backend.spawned), 1)

    def test_public_start_cancels_pending_restart(self):
        sup = self.make_supervisor()
        sup.start()
        self.backend.last_handle.finish(1)
        timer = self.timers[-1]
        self.assertTrue(sup.start()["success"])
        self.assertTrue(timer.cancelled)
        timer.fire()
        self.assertEqual(len(self.backend.spawned), 2)

    def test_failed_timer_start_goes_to_error(self):
        results = [_found()]

        def _locate(**kwargs):
            return results.pop(0) if results else {"path": None, "installed": False, "error": "gone", "version": None}

        sup = self.make_supervisor(locate=_locate)
        sup.start()
        sup._binary = None
        self.backend.last_handle.finish(1)
        self.timers[-1].fire()
        self.assertEqual(sup.session.status, TunnelStatus.ERROR)


class HealthCheckTests(SupervisorTestCase):
    def test_stalled_start_restarts_exactly_once(self):
        sup = self.make_supervisor(tunnel_grace_seconds=30.0)
        sup.start()
        self.now[0] += 29
        self.assertIsNone(sup.health_check_tick())
        self.now[0] += 2
        result = sup.health_check_tick()
        self.assertTrue(result["success"])
        self.assertEqual(len(self.backend.spawned), 2)
        self.assertIsNone(sup.health_check_tick())
        self.assertIsNone(sup.health_check_tick())
        self.assertEqual(len(self.backend.spawned), 2)

    def test_stable_operation_resets_counter(self):
        sup = self.make_supervisor(stable_reset_seconds=300.0)
        sup.start()
        self.backend.last_handle.send(b"a.ply.gg:1\n")
        sup.session.restart_attempts = 2
        self.now[0] += 299
        sup.health_check_tick()
        self.assertEqual(sup.session.restart_attempts, 2)
        self.now[0] += 2
        self.assertIsNone(sup.health_check_tick())
        self.assertEqual(sup.session.restart_attempts, 0)
        self.assertEqual(len(self.backend.spawned), 1)

    def test_managed_service_inactive_triggers_restart(self):
        self.backend = FakeBackend(mode="systemd")
        sup = self.make_supervisor()
        sup.start()
        first = self.backend.last_handle
        self.backend.alive = False
        result = sup.health_check_tick()
        self.assertTrue(result["success"])
        self.assertEqual(self.backend.stopped, [first])
        self.assertEqual(len(self.backend.spawned), 2)

    def test_direct_dead_process_left_to_exit_handler(self):
        sup = self.make_supervisor()
        sup.start()
        self.backend.alive = False
        self.now[0] += 120
        self.assertIsNone(sup.health_check_tick())
        self.assertEqual(len(self.backend.spawned), 1)

    def test_skips_when_restarting_or_stopped(self):
        sup = self.make_supervisor()
        self.assertIsNone(sup.health_check_tick())
        sup.start()
        self.backend.last_handle.finish(1)
        self.now[0] += 120
        self.assertIsNone(sup.health_check_tick())
        self.assertEqual(len(self.backend.spawned), 1)


class StateAndLogTests(SupervisorTestCase):
    def test_disallowed_transition_is_rejected(self):
        sup = self.make_supervisor()
        self.assertFalse(sup._set_status(TunnelStatus.RUNNING))
        self.assertEqual(sup.session.status, TunnelStatus.STOPPED)
        self.assertIn("Rejected status transition stopped -> running", sup.get_logs()[-1]["message"])

    def test_log_ring_is_bounded(self):
        sup = self.make_supervisor(max_logs=5)
        sup.start()
        for index in range(20):
            self.backend.last_handle.send(f"line {index}\n".encode())
        logs = sup.get_logs()
        self.assertEqual(len(logs), 5)
        self.assertEqual(logs[-1], {"timestamp": logs[-1]["timestamp"], "type": "agent", "message": "line 19"})
        self.assertEqual([entry["message"] for entry in sup.get_logs(2)], ["line 18", "line 19"])
        self.assertEqual(sup.get_logs(0), [])

    def test_log_events_mirror_ring(self):
        sup = self.make_supervisor()
        sup.start()
        self.backend.last_handle.send(b"hello agent\n")
        self.assertIn({"log": sup.get_logs()[-1]}, self.events("log"))
        self.assertNotIn("agent_output", self.event_names())

    def test_emit_records_one_shot_results(self):
        sup = self.make_supervisor()
        sup.emit(ev.Tunnels(tunnels=({"name": "Minecraft Server"},)))
        sup.emit(ev.Claim(code="ab12cd34", url="https://playit.gg/claim/ab12cd34"))
        sup.emit(ev.Secret(key="ab" * 32))
        self.assertEqual(sup.last_tunnels, [{"name": "Minecraft Server"}])
        snapshot = sup.snapshot()
        self.assertEqual(snapshot["claim"], {"code": "ab12cd34", "url": "https://playit.gg/claim/ab12cd34"})
        self.assertEqual(snapshot["secretPath"], str(self.root / "playit_gg" / "playit.toml"))
        self.assertEqual(self.events("secret"), [{"path": str(self.root / "playit_gg" / "playit.toml")}])

    def test_snapshot_reports_uptime(self):
        sup = self.make_supervisor()
        sup.start()
        self.now[0] += 12
        snapshot = sup.snapshot()
        self.assertEqual(snapshot["status"], "starting")
        self.assertEqual(snapshot["uptime"], 12)
        self.assertEqual(snapshot["mode"], "direct")
        self.assertEqual(snapshot["binaryPath"], "/opt/playit/playit")

    def test_corrupt_persisted_secret_is_set_aside(self):
        sup = self.make_supervisor()
        secret_path = self.root / "playit_gg" / "playit.toml"
        secret_path.parent.mkdir(parents=True)
        secret_path.write_text("garbage", encoding="utf-8")
        self.assertFalse(sup.load_persisted_secret())
        self.assertFalse(secret_path.exists())
        self.assertEqual(len(list(secret_path.parent.glob("playit.toml.bak.*"))), 1)
        self.assertEqual(sup.get_logs()[-1]["type"], "error")


class UpdateTests(SupervisorTestCase):
    def test_check_for_updates_compares_versions(self):
        sup = self.make_supervisor(fetch_release=lambda attempts=3, log=None: {"tag_name": "v0.16.0"})
        (self.root / "playit-version.json").write_text('{"version": "v0.15.26", "updated": "x"}', encoding="utf-8")
        result = sup.check_for_updates()
        self.assertTrue(result["success"])
        self.assertTrue(result["updateAvailable"])
        self.assertEqual(result["currentVersion"], "v0.15.26")
        self.assertEqual(result["latestVersion"], "v0.16.0")

    def test_check_for_updates_failure(self):
        sup = self.make_supervisor()
        result = sup.check_for_updates()
        self.assertFalse(result["success"])
        self.assertFalse(result["updateAvailable"])

    def test_update_binary_reinstalls_and_restarts(self):
        calls = []

        def _locate(**kwargs):
            calls.append(kwargs)
            version = "v0.16.0" if kwargs.get("force_update") else None
            return {"path": "/opt/playit/playit", "installed": True, "error": None, "version": version}

        sup = self.make_supervisor(locate=_locate)
        sup.start()
        result = sup.update_binary(restart=True)
        self.assertTrue(result["success"])
        self.assertEqual(result["version"], "v0.16.0")
        self.assertTrue(calls[-1]["force_update"])
        self.assertEqual(sup.current_version(), "v0.16.0")
        self.assertEqual(self.events("version"), [{"version": "v0.16.0"}])
        self.assertEqual(len(self.backend.spawned), 2)
        self.assertEqual(sup.session.status, TunnelStatus.STARTING)

    def test_update_failure_is_reported(self):
        def _locate(**kwargs):
            if kwargs.get("force_update"):
                return {"path": None, "installed": False, "error": "Failed to fetch release information", "version": None}
            return _found()

        sup = self.make_supervisor(locate=_locate)
        result = sup.update_binary()
        self.assertFalse(result["success"])
        self.assertIn("Failed to fetch release information", result["message"])
        self.assertEqual(self.events("error")[-1]["message"], result["message"])


if __name__ == "__main__":
    unittest.main()
