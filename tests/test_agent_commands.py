import json
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace

from tunnelpanel.core.config import TunnelSettings
from tunnelpanel.core.errors import AgentCommandError
from tunnelpanel.services import agent_commands as commands
from tunnelpanel.services import agent_events as ev
from tunnelpanel.services.gateway import dispatch

SECRET = "0123456789abcdef" * 4


def _result(returncode=0, stdout="", stderr=""):
    return SimpleNamespace(returncode=returncode, stdout=stdout, stderr=stderr)


class FakeSupervisor:
    def __init__(self, settings):
        self.settings = settings
        self.emitted = []
        self.secret_reloads = 0

    def emit(self, event):
        self.emitted.append(event)

    def agent_binary_path(self):
        return "/opt/playit"

    def load_persisted_secret(self):
        self.secret_reloads += 1
        return False


class FakeRunner:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def __call__(self, cmd, timeout):
        self.calls.append((list(cmd), timeout))
        return self.responses[" ".join(cmd[1:3])]


class CommandTestCase(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.root = Path(tmp.name)
        self.settings = TunnelSettings(
            config_path=self.root / "playit.toml",
            secret_path=self.root / "playit_gg" / "playit.toml",
            version_path=self.root / "playit-version.json",
            claim_exchange_delay_seconds=3.0,
            claim_exchange_timeout_seconds=120.0,
            command_timeout_seconds=15.0,
        )
        self.supervisor = FakeSupervisor(self.settings)
        self.sleeps = []


class LoginTests(CommandTestCase):
    def test_successful_login_persists_secret(self):
        run = FakeRunner({
            "claim generate": _result(stdout="\x1b[0mab12cd34\n"),
            "claim exchange": _result(stdout=f"{SECRET}\n"),
        })
        self.assertTrue(commands.login(self.supervisor, run=run, sleep=self.sleeps.append))
        self.assertEqual(run.calls[0], (["/opt/playit", "claim", "generate"], 15.0))
        self.assertEqual(run.calls[1], (["/opt/playit", "claim", "exchange", "ab12cd34"], 120.0))
        self.assertEqual(self.sleeps, [3.0])
        self.assertEqual(
            self.supervisor.emitted,
            [
                ev.Claim(code="ab12cd34", url="https://playit.gg/claim/ab12cd34"),
                ev.Exchanging(code="ab12cd34"),
                ev.Secret(key=SECRET, path=str(self.settings.secret_path)),
            ],
        )
        self.assertIn(SECRET, self.settings.secret_path.read_text(encoding="utf-8"))

    def test_generate_failure_reports_stderr(self):
        run = FakeRunner({"claim generate": _result(returncode=1, stderr="network unreachable")})
        self.assertFalse(commands.login(self.supervisor, run=run, sleep=self.sleeps.append))
        self.assertEqual(self.supervisor.emitted, [ev.AgentError(message="network unreachable")])
        self.assertEqual(self.sleeps, [])

    def test_unreadable_claim_code_stops_login(self):
        run = FakeRunner({"claim generate": _result(stdout="\x1b[0m")})
        self.assertFalse(commands.login(self.supervisor, run=run, sleep=self.sleeps.append))
        self.assertEqual(self.supervisor.emitted, [ev.AgentError(message="Failed to extract claim code!")])
        self.assertEqual(len(run.calls), 1)

    def test_missing_secret_in_exchange_output(self):
        run = FakeRunner({
            "claim generate": _result(stdout="ab12cd34\n"),
            "claim exchange": _result(stdout="waiting for approval...\n", stderr="slow response"),
        })
        self.assertFalse(commands.login(self.supervisor, run=run, sleep=self.sleeps.append))
        self.assertIn(ev.AgentWarning(message="slow response"), self.supervisor.emitted)
        self.assertEqual(self.supervisor.emitted[-1], ev.AgentError(message="Secret not found!"))
        self.assertFalse(self.settings.secret_path.exists())

    def test_exchange_failure(self):
        run = FakeRunner({
            "claim generate": _result(stdout="ab12cd34\n"),
            "claim exchange": _result(returncode=2),
        })
        self.assertFalse(commands.login(self.supervisor, run=run, sleep=self.sleeps.append))
        self.assertEqual(self.supervisor.emitted[-1], ev.AgentError(message="claim exchange exited with code 2"))


class OtherCommandTests(CommandTestCase):
    def test_list_tunnels_from_object(self):
        payload = {"tunnels": [{"name": "Minecraft Server", "port": 25565}]}
        run = FakeRunner({"tunnels list": _result(stdout=json.dumps(payload))})
        self.assertTrue(commands.list_tunnels(self.supervisor, run=run))
        self.assertEqual(self.supervisor.emitted, [ev.Tunnels(tunnels=({"name": "Minecraft Server", "port": 25565},))])

    def test_list_tunnels_from_array(self):
        run = FakeRunner({"tunnels list": _result(stdout='[{"name": "a"}]')})
        self.assertTrue(commands.list_tunnels(self.supervisor, run=run))
        self.assertEqual(self.supervisor.emitted[0].tunnels, ({"name": "a"},))

    def test_list_tunnels_bad_json(self):
        run = FakeRunner({"tunnels list": _result(stdout="not json")})
        self.assertFalse(commands.list_tunnels(self.supervisor, run=run))
        self.assertEqual(self.supervisor.emitted, [ev.AgentError(message="Failed to parse tunnel list")])

    def test_reset_clears_secret(self):
        self.settings.secret_path.parent.mkdir(parents=True)
        self.settings.secret_path.write_text(f'secret_key = "{SECRET}"\n', encoding="utf-8")
        run = FakeRunner({"reset": _result(returncode=0)})
        self.assertTrue(commands.reset(self.supervisor, run=run))
        self.assertFalse(self.settings.secret_path.exists())
        self.assertEqual(self.supervisor.secret_reloads, 1)
        self.assertEqual(self.supervisor.emitted, [ev.Resetting(), ev.ResetComplete(exit_code=0)])

    def test_reset_reports_exit_code(self):
        run = FakeRunner({"reset": _result(returncode=5)})
        self.assertFalse(commands.reset(self.supervisor, run=run))
        self.assertEqual(self.supervisor.emitted[-1], ev.ResetComplete(exit_code=5))

    def test_secret_path_and_version(self):
        run = FakeRunner({
            "secret-path": _result(stdout="/root/.config/playit_gg/playit.toml\n"),
            "version": _result(stdout="playit 0.15.26\n"),
        })
        self.assertTrue(commands.show_secret_path(self.supervisor, run=run))
        self.assertTrue(commands.show_version(self.supervisor, run=run))
        self.assertEqual(
            self.supervisor.emitted,
            [ev.SecretPath(path="/root/.config/playit_gg/playit.toml"), ev.Version(version="playit 0.15.26")],
        )

    def test_version_failure(self):
        run = FakeRunner({"version": _result(returncode=127, stderr="not found")})
        self.assertFalse(commands.show_version(self.supervisor, run=run))
        self.assertEqual(self.supervisor.emitted, [ev.AgentError(message="not found")])

    def test_help_is_static(self):
        self.assertTrue(commands.show_help(self.supervisor))
        self.assertEqual(self.supervisor.emitted, [ev.Help(text=commands.HELP_TEXT)])


class DispatchTests(CommandTestCase):
    def setUp(self):
        super().setUp()
        self.actions = []
        self.exceptions = []
        self.state = {
            "supervisor": self.supervisor,
            "log_panel_action": lambda action, command=None, rejection_message=None: self.actions.append(
                (action, rejection_message)
            ),
            "log_panel_exception": lambda context, exc: self.exceptions.append((context, exc)),
        }

    def test_worker_exception_becomes_error_event(self):
        def _boom():
            raise AgentCommandError("PlayIt binary unavailable: missing")

        worker = dispatch(self.state, "login", _boom)
        worker.join(5)
        self.assertEqual(
            self.supervisor.emitted,
            [ev.AgentError(message="login failed: PlayIt binary unavailable: missing")],
        )
        self.assertEqual(self.exceptions[0][0], "dispatch/login")
        self.assertIn(("login", None), self.actions)
        self.assertIn(("login-worker", "PlayIt binary unavailable: missing"), self.actions)

    def test_unsuccessful_result_is_logged(self):
        worker = dispatch(self.state, "start", lambda: {"success": False, "message": "PlayIt is already running or starting"})
        worker.join(5)
        self.assertIn(("start-worker", "PlayIt is already running or starting"), self.actions)
        self.assertEqual(self.supervisor.emitted, [])

    def test_arguments_are_forwarded(self):
        seen = []
        worker = dispatch(self.state, "update", lambda restart=False: seen.append(restart), restart=True)
        worker.join(5)
        self.assertEqual(seen, [True])


if __name__ == "__main__":
    unittest.main()
