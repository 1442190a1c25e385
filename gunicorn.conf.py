"""
Production Server Configuration

Run FastAPI with Uvicorn workers under Gunicorn for production deployment.
"""

import os

# Server socket
bind = os.getenv("BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes
# Each worker holds its own artifact pointers and refresh coordinator, and a
# refresh request reaches only one of them. Keep a single worker unless every
# worker restarts after refreshes.
workers = int(os.getenv("WORKERS", 1))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
timeout = int(os.getenv("GUNICORN_TIMEOUT", 300))  # waiting refresh requests can be slow
keepalive = 5
graceful_timeout = 60

# Process naming
proc_name = "billing-aggregates-api"

# Server mechanics
daemon = False
pidfile = "/tmp/gunicorn.pid"

# Logging
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info")
accesslog = "-"
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'


def when_ready(server):
    """Called when server is ready to receive connections."""
    server.log.info("Billing aggregates API ready with %s worker(s)", workers)


def worker_abort(worker):
    """Called when worker receives SIGABRT signal (usually a timeout)."""
    worker.log.warning("Worker %s aborted, in-flight refreshes are lost and resume as IDLE", worker.pid)
