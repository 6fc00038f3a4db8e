"""Panel startup and shutdown sequencing."""


def run_boot_steps(boot_steps, log_action, log_exception):
    """Run named startup callables in order; the first failure aborts boot."""
    for step_name, step_func in boot_steps:
        try:
            step_func()
        except Exception as exc:
            log_exception(f"boot_step/{step_name}", exc)
            log_action("boot-failed", command=step_name, rejection_message=str(exc)[:500] or "startup step failed")
            raise
        log_action("boot-step", command=step_name)


def run_server(app, host, port, log_action, log_exception, boot_steps, shutdown_steps=()):
    """Boot the tunnel services, serve HTTP, then run shutdown steps."""
    log_action("boot-start", command=f"host={host} port={port}")
    run_boot_steps(boot_steps, log_action, log_exception)
    log_action("boot-ready", command=f"host={host} port={port}")
    try:
        app.run(host=host, port=port, threaded=True)
    except Exception as exc:
        log_exception("boot_step/app.run", exc)
        log_action("boot-failed", command="app.run", rejection_message=str(exc)[:500] or "web server startup failed")
        raise
    finally:
        for step_name, step_func in shutdown_steps:
            try:
                step_func()
            except Exception as exc:
                log_exception(f"shutdown_step/{step_name}", exc)
