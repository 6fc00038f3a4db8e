"""Fire-and-forget dispatch of tunnel operations from HTTP requests."""

import threading

from tunnelpanel.services import agent_events as ev


def dispatch(state, name, func, *args, **kwargs):
    """Run ``func`` on a daemon thread and return immediately.

    Exceptions become ``error`` events on the realtime channel; the HTTP
    caller only learns that the operation was initiated.
    """
    supervisor = state["supervisor"]

    def _worker():
        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            state["log_panel_exception"](f"dispatch/{name}", exc)
            state["log_panel_action"](f"{name}-worker", rejection_message=str(exc)[:400] or "operation failed")
            supervisor.emit(ev.AgentError(message=f"{name} failed: {exc}"))
            return
        if isinstance(result, dict) and not result.get("success", True):
            state["log_panel_action"](f"{name}-worker", rejection_message=result.get("message") or "operation failed")

    worker = threading.Thread(target=_worker, name=f"playit-{name}", daemon=True)
    worker.start()
    state["log_panel_action"](name)
    return worker
