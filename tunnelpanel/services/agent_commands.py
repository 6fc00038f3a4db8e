"""One-shot agent CLI commands (claim, tunnels, reset, version).

Each command runs the agent binary with a bounded timeout and reports its
outcome only through supervisor events; the return value is a bool for
callers that want to chain.
"""

import json
import time

from tunnelpanel.core.agent_files import clear_secret_file, write_secret_file
from tunnelpanel.core.errors import ConfigError
from tunnelpanel.services import agent_events as ev
from tunnelpanel.services.output_parser import claim_code_events, clean_ansi, extract_secret
from tunnelpanel.services.process_driver import run_command

HELP_TEXT = """
Usage: tunnel agent operations exposed by the panel

Operations:
  login         Generate a claim code, exchange it and store the secret
  tunnels       List tunnels registered for this agent
  start         Start the playit agent
  stop          Stop the playit agent
  restart       Restart the playit agent
  reset         Reset the saved secret key
  secret-path   Show the path of the secret key
  version       Show the playit agent version
  update        Install the latest playit agent release
  help          Show this help message
"""


def _failure_detail(result, fallback):
    detail = clean_ansi(result.stderr or "") or clean_ansi(result.stdout or "")
    return detail or fallback


def login(supervisor, run=run_command, sleep=time.sleep):
    """Claim a new agent secret: generate, wait, exchange, persist."""
    settings = supervisor.settings
    binary = supervisor.agent_binary_path()

    result = run([binary, "claim", "generate"], settings.command_timeout_seconds)
    if result.returncode != 0:
        supervisor.emit(ev.AgentError(message=_failure_detail(result, "claim generate failed")))
        return False
    events = claim_code_events(result.stdout or "")
    for event in events:
        supervisor.emit(event)
    claim = events[0]
    if not isinstance(claim, ev.Claim):
        return False

    sleep(settings.claim_exchange_delay_seconds)
    supervisor.emit(ev.Exchanging(code=claim.code))
    result = run([binary, "claim", "exchange", claim.code], settings.claim_exchange_timeout_seconds)
    if result.returncode != 0:
        supervisor.emit(ev.AgentError(message=_failure_detail(result, f"claim exchange exited with code {result.returncode}")))
        return False
    warning = clean_ansi(result.stderr or "")
    if warning:
        supervisor.emit(ev.AgentWarning(message=warning))

    secret = extract_secret(result.stdout or "")
    if not secret:
        supervisor.emit(ev.AgentError(message="Secret not found!"))
        return False
    try:
        path = write_secret_file(settings.secret_path, secret)
    except (OSError, ConfigError) as exc:
        supervisor.emit(ev.AgentError(message=f"Failed to write secret: {exc}"))
        return False
    supervisor.emit(ev.Secret(key=secret, path=str(path)))
    return True


def list_tunnels(supervisor, run=run_command):
    binary = supervisor.agent_binary_path()
    result = run([binary, "tunnels", "list"], supervisor.settings.command_timeout_seconds)
    if result.returncode != 0:
        supervisor.emit(ev.AgentError(message=_failure_detail(result, "tunnels list failed")))
        return False
    try:
        data = json.loads(clean_ansi(result.stdout or ""))
    except ValueError:
        supervisor.emit(ev.AgentError(message="Failed to parse tunnel list"))
        return False
    tunnels = data.get("tunnels", []) if isinstance(data, dict) else data
    if not isinstance(tunnels, list):
        supervisor.emit(ev.AgentError(message="Unexpected tunnel list format"))
        return False
    supervisor.emit(ev.Tunnels(tunnels=tuple(tunnels)))
    return True


def reset(supervisor, run=run_command):
    """Reset the agent and set the stored secret aside."""
    binary = supervisor.agent_binary_path()
    supervisor.emit(ev.Resetting())
    result = run([binary, "reset"], supervisor.settings.command_timeout_seconds)
    try:
        clear_secret_file(supervisor.settings.secret_path)
    except OSError as exc:
        supervisor.emit(ev.AgentError(message=f"Failed to clear secret: {exc}"))
    supervisor.load_persisted_secret()
    supervisor.emit(ev.ResetComplete(exit_code=result.returncode))
    return result.returncode == 0


def show_secret_path(supervisor, run=run_command):
    binary = supervisor.agent_binary_path()
    result = run([binary, "secret-path"], supervisor.settings.command_timeout_seconds)
    path = clean_ansi(result.stdout or "")
    if result.returncode != 0 or not path:
        supervisor.emit(ev.AgentError(message=_failure_detail(result, "secret-path failed")))
        return False
    supervisor.emit(ev.SecretPath(path=path))
    return True


def show_version(supervisor, run=run_command):
    binary = supervisor.agent_binary_path()
    result = run([binary, "version"], supervisor.settings.command_timeout_seconds)
    version = clean_ansi(result.stdout or "")
    if result.returncode != 0 or not version:
        supervisor.emit(ev.AgentError(message=_failure_detail(result, "version failed")))
        return False
    supervisor.emit(ev.Version(version=version))
    return True


def show_help(supervisor):
    supervisor.emit(ev.Help(text=HELP_TEXT))
    return True
