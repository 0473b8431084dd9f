"""
Gunicorn configuration file for production deployment.

The matching engine keeps its indexes in process memory, so a single worker
process serves requests on several threads. Run with:

    gunicorn -c picmatch/gunicorn_config.py picmatch.app:app
"""

import os

# Server socket
bind = f"0.0.0.0:{os.environ.get('PORT', '8080')}"
backlog = 2048

# Worker processes
workers = 1
worker_class = 'gthread'
threads = int(os.environ.get('GUNICORN_THREADS', '8'))
timeout = 120  # uploads return immediately; matching runs on background pools
keepalive = 2

# Graceful shutdown
graceful_timeout = 30

# Logging
accesslog = '-'  # Log to stdout
errorlog = '-'   # Log to stdout
loglevel = os.environ.get('LOG_LEVEL', 'warning').lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = 'picmatch-gunicorn'

# Server mechanics
daemon = False
pidfile = None
umask = 0
user = None
group = None
tmp_upload_dir = None


def on_starting(server):
    """Called just before the master process is initialized."""
    server.log.info("Starting PicMatch application server")


def when_ready(server):
    """Called just after the server is started."""
    server.log.info("PicMatch application server is ready. Listening on: %s", bind)


def post_worker_init(worker):
    """Build the engine eagerly so pending photos resume without waiting for a request."""
    from picmatch.app import get_service
    get_service()
    worker.log.info("Matching service ready in worker %s", worker.pid)


def worker_exit(server, worker):
    """Let in-flight extraction and matching tasks finish before the worker goes away."""
    from picmatch.app import app
    service = app.config.get('MATCHING_SERVICE')
    if service is not None:
        service.shutdown(wait=True)
    server.log.info("Worker %s drained ingestion pools", worker.pid)


def on_exit(server):
    """Called just before exiting Gunicorn."""
    server.log.info("Shutting down PicMatch application server")
