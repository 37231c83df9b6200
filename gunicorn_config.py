"""Gunicorn configuration: one worker, because only one reconciler may be active."""
import os
import sys

# Gunicorn config variables
bind = f"0.0.0.0:{os.getenv('PORT', '8080')}"
workers = 1
threads = 4
timeout = 120
worker_class = "gthread"
preload_app = False  # the loop thread must live in the worker, not the master
loglevel = os.getenv("LOG_LEVEL", "info").lower()

def post_worker_init(worker):
    """Called just after a worker has initialized the application."""
    try:
        app = worker.app.wsgi()
        loop = app.config.get('reconciler_loop') if hasattr(app, 'config') else None
        if loop is None:
            print(f"[Worker {worker.pid}] WARNING: No reconciliation loop found in app.config", file=sys.stderr, flush=True)
            return
        if os.getenv("RECONCILER_AUTOSTART", "1") == "1" and not loop.running:
            loop.start()
        print(
            f"[Worker {worker.pid}] reconciler running={loop.running} "
            f"nodes={len(loop.registry.list_nodes())} workloads={len(loop.store.list())}",
            file=sys.stderr,
            flush=True,
        )
    except Exception as e:
        print(f"[Worker {worker.pid}] ERROR in post_worker_init: {e}", file=sys.stderr, flush=True)
        import traceback
        traceback.print_exc(file=sys.stderr)
