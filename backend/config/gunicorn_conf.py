# config/gunicorn_conf.py
# gunicorn -c config/gunicorn_conf.py config.asgi:application
import os
import multiprocessing

# (2 * CPU) + 1 unless GUNICORN_WORKERS says otherwise
workers = int(os.getenv("GUNICORN_WORKERS", multiprocessing.cpu_count() * 2 + 1))

# ASGI worker: the tracking and notification sockets share the HTTP process
worker_class = "uvicorn.workers.UvicornWorker"

port = int(os.getenv("PORT", 8000))
bind = [f"0.0.0.0:{port}"]
proc_name = "dispatch-api"

# Location pings are small; anything slower than this is stuck
timeout = int(os.getenv("GUNICORN_TIMEOUT", 60))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", 30))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", 5))

# Logs go to stdout/stderr for the container runtime
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")
access_log_format = '%(h)s %(t)s "%(r)s" %(s)s %(b)s %(D)s "%({x-correlation-id}o)s"'

# Recycle workers periodically; jitter avoids restarting all at once
max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", 1000))
max_requests_jitter = int(os.getenv("GUNICORN_MAX_REQUESTS_JITTER", 100))

forwarded_allow_ips = os.getenv("FORWARDED_ALLOW_IPS", "*")
preload_app = True


def on_starting(server):
    server.log.info(f"Starting {proc_name} with {workers} {worker_class} workers on port {port}")


def on_exit(server):
    server.log.info(f"{proc_name} shutting down")
