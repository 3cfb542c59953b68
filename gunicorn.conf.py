"""
Gunicorn Configuration for the Orderflow API

Job processing runs in separate worker processes (orderflow-worker);
these API workers only enqueue jobs and serve reads.
"""

import multiprocessing
import os

bind = os.getenv("BIND", "0.0.0.0:8000")

workers = int(os.getenv("WORKERS", multiprocessing.cpu_count() + 1))
worker_class = "uvicorn.workers.UvicornWorker"
max_requests = 10000
max_requests_jitter = 1000
timeout = 60
keepalive = 5
graceful_timeout = 30

proc_name = "orderflow-api"

errorlog = "-"
accesslog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
