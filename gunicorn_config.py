"""Gunicorn configuration: one worker owns the controller and its watcher."""
import os
import sys

# Gunicorn config variables
bind = os.getenv("RECON_BIND", "0.0.0.0:8080")
workers = 1  # applied state and the watcher thread live in-process
threads = 4
timeout = 300  # join completion blocks for the handshake
worker_class = "gthread"
preload_app = False

def post_worker_init(worker):
    """Called just after a worker has initialized the application."""
    try:
        from app import seed_topology

        app = worker.app.wsgi() if hasattr(worker.app, "wsgi") else None
        controller = app.config.get('recon_controller') if app is not None else None
        if controller is None:
            print(f"[Worker {worker.pid}] WARNING: No controller found in app.config", file=sys.stderr, flush=True)
            return
        if not controller.topology.list_nodes():
            seed_topology(controller)
        print(f"[Worker {worker.pid}] Topology has {len(controller.topology.list_nodes())} nodes", file=sys.stderr, flush=True)
        if controller.config.watcher.auto_start and not controller.watcher.running:
            controller.start()
            print(f"[Worker {worker.pid}] Drift watcher started", file=sys.stderr, flush=True)
    except Exception as e:
        print(f"[Worker {worker.pid}] ERROR in post_worker_init: {e}", file=sys.stderr, flush=True)
        import traceback
        traceback.print_exc(file=sys.stderr)

def worker_exit(server, worker):
    """Stop the watcher so an in-flight apply finishes before the worker exits."""
    try:
        app = worker.app.wsgi() if hasattr(worker.app, "wsgi") else None
        controller = app.config.get('recon_controller') if app is not None else None
        if controller is not None:
            controller.stop(timeout=float(os.getenv("RECON_STOP_TIMEOUT", "60")))
    except Exception as e:
        print(f"[Worker {worker.pid}] ERROR stopping controller: {e}", file=sys.stderr, flush=True)
