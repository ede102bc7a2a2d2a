"""Gunicorn configuration: each worker runs its own poll loop."""
import os
import sys

# Gunicorn config variables
bind = os.getenv("NODECTL_BIND", "0.0.0.0:8080")
workers = 1  # hints are per-process; more workers would each hold their own
threads = 4
timeout = 120
worker_class = "gthread"
preload_app = False  # Don't preload - the poll thread must start after fork

def post_worker_init(worker):
    """Called just after a worker has initialized the application."""
    try:
        app = worker.wsgi
        reconciler = app.config.get('reconciler') if hasattr(app, 'config') else None
        if reconciler:
            reconciler.start()
            print(f"[Worker {worker.pid}] Polling {len(reconciler.tracked())} node(s)", file=sys.stderr, flush=True)
        else:
            print(f"[Worker {worker.pid}] WARNING: No reconciler found in app.config", file=sys.stderr, flush=True)
    except Exception as e:
        print(f"[Worker {worker.pid}] ERROR in post_worker_init: {e}", file=sys.stderr, flush=True)
        import traceback
        traceback.print_exc(file=sys.stderr)

def worker_exit(server, worker):
    """Stop polling cleanly when a worker exits."""
    app = getattr(worker, 'wsgi', None)
    reconciler = app.config.get('reconciler') if hasattr(app, 'config') else None
    if reconciler:
        reconciler.shutdown(wait_for_tasks=False)
