"""Tunnel agent route registration under the ``/playit`` namespace."""
from flask import Response, request, stream_with_context

from tunnelpanel.core.response_helpers import ok_response, result_response
from tunnelpanel.services.event_hub import format_sse_frame


def _safe_int(value, default_value, minimum=0, maximum=10_000):
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default_value
    if parsed < minimum:
        return minimum
    if parsed > maximum:
        return maximum
    return parsed


def _request_flag(name):
    payload = request.get_json(silent=True)
    if isinstance(payload, dict) and name in payload:
        value = payload[name]
    else:
        value = request.form.get(name, request.args.get(name, ""))
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def register_playit_routes(app, state):
    """Register tunnel lifecycle, agent command and event stream routes."""
    supervisor = state["supervisor"]
    commands = state["agent_commands"]

    def _initiated(name, func, message, *args):
        state["dispatch"](state, name, func, *args)
        return ok_response(message)

    # Route: /playit/login
    @app.route("/playit/login", methods=["POST"])
    def playit_login():
        return _initiated("login", commands.login, "Login initiated", supervisor)

    # Route: /playit/tunnels
    @app.route("/playit/tunnels")
    def playit_tunnels():
        state["dispatch"](state, "tunnels", commands.list_tunnels, supervisor)
        return ok_response("Tunnel listing initiated", data=list(supervisor.last_tunnels))

    # Route: /playit/reset
    @app.route("/playit/reset", methods=["POST"])
    def playit_reset():
        return _initiated("reset", commands.reset, "Reset initiated", supervisor)

    # Route: /playit/version
    @app.route("/playit/version")
    def playit_version():
        return _initiated("version", commands.show_version, "Version request initiated", supervisor)

    # Route: /playit/secret-path
    @app.route("/playit/secret-path")
    def playit_secret_path():
        return _initiated("secret-path", commands.show_secret_path, "Secret path request initiated", supervisor)

    # Route: /playit/help
    @app.route("/playit/help")
    def playit_help():
        return _initiated("help", commands.show_help, "Help request initiated", supervisor)

    # Route: /playit/start
    @app.route("/playit/start", methods=["POST"])
    def playit_start():
        return _initiated("start", supervisor.start, "Start initiated")

    # Route: /playit/stop
    @app.route("/playit/stop", methods=["POST"])
    def playit_stop():
        return _initiated("stop", supervisor.stop, "Stop initiated")

    # Route: /playit/restart
    @app.route("/playit/restart", methods=["POST"])
    def playit_restart():
        return _initiated("restart", supervisor.restart, "Restart initiated")

    # Route: /playit/update
    @app.route("/playit/update", methods=["POST"])
    def playit_update():
        restart = _request_flag("restart")
        return _initiated("update", supervisor.update_binary, "Update initiated", restart)

    # Route: /playit/status
    @app.route("/playit/status")
    def playit_status():
        snapshot = supervisor.snapshot(log_limit=state["STATUS_LOG_LIMIT"])
        return ok_response("ok", data=snapshot)

    # Route: /playit/logs
    @app.route("/playit/logs")
    def playit_logs():
        limit = _safe_int(request.args.get("limit"), state["STATUS_LOG_LIMIT"], minimum=1)
        return ok_response("ok", data=supervisor.get_logs(limit))

    # Route: /playit/check-updates
    @app.route("/playit/check-updates")
    def playit_check_updates():
        # One release lookup keeps the request bounded by a single HTTP timeout.
        return result_response(supervisor.check_for_updates(attempts=1), failure_status=502)

    # Route: /playit/events
    @app.route("/playit/events")
    def playit_events():
        """Server-Sent Events stream of every tunnel domain event."""
        hub = state["event_hub"]
        resume_from = request.headers.get("Last-Event-ID") or request.args.get("since")
        if resume_from is None or str(resume_from).strip() == "":
            start_seq = hub.current_seq()
        else:
            start_seq = _safe_int(resume_from, hub.current_seq(), minimum=0, maximum=2**62)
        heartbeat = state["EVENT_STREAM_HEARTBEAT_SECONDS"]

        def generate():
            hub.add_client()
            last_seq = start_seq
            try:
                yield "retry: 3000\n\n"
                while True:
                    last_seq, pending = hub.wait_for_events(last_seq, heartbeat)
                    if pending:
                        for seq, name, payload in pending:
                            yield format_sse_frame(seq, name, payload)
                    else:
                        yield ": keepalive\n\n"
            finally:
                hub.remove_client()

        return Response(
            stream_with_context(generate()),
            mimetype="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )
