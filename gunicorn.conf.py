"""
Production Server Configuration

Run FastAPI with Uvicorn workers under Gunicorn for production deployment.
"""

import multiprocessing
import os

# Server socket
bind = os.getenv("BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes
workers = int(os.getenv("WORKERS", multiprocessing.cpu_count() * 2 + 1))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000
max_requests_jitter = 1000
# Must exceed the analytics pipeline's resolve + fetch budgets
timeout = int(os.getenv("WORKER_TIMEOUT", 120))
keepalive = 5
# Lets background cache writes finish on shutdown
graceful_timeout = 30

# Process naming
proc_name = "pagelens-api"

# Server mechanics
daemon = False
pidfile = os.getenv("PIDFILE", "/tmp/pagelens-gunicorn.pid")

# Logging
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
accesslog = "-"
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'


def when_ready(server):
    """Called when server is ready to receive connections."""
    server.log.info("PageLens API ready on %s with %s workers", bind, workers)


def worker_abort(worker):
    """Called when worker receives SIGABRT signal."""
    worker.log.warning("Worker %s aborted, likely exceeded timeout", worker.pid)
