"""
Gunicorn Configuration

gunicorn -c deploy/gunicorn.conf.py prediction_system.main:app

Channel locks and the in-memory event stream live inside one process, so
the default is a single worker. Raise WEB_CONCURRENCY only on PostgreSQL,
where row locks keep session transitions serialised across workers.
"""
import os

# Server socket
bind = os.environ.get("BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes
workers = int(os.environ.get("WEB_CONCURRENCY", "1"))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
timeout = 60
keepalive = 5

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = "prediction-system"

# Server mechanics
daemon = False
pidfile = "/tmp/prediction-system.pid"

# Security
limit_request_line = 4094
limit_request_fields = 100
limit_request_field_size = 8190


def when_ready(server):
    server.log.info(f"prediction-system ready with {workers} worker(s)")
