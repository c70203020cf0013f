# gunicorn.conf.py
import os

bind = f"0.0.0.0:{os.getenv('PORT', '8080')}"
workers = int(os.getenv("WEB_CONCURRENCY", "2"))
worker_class = "uvicorn.workers.UvicornWorker"
# pipeline runs live inside the worker process; keep it around while they finish
preload_app = False
timeout = 120
graceful_timeout = int(os.getenv("GRACEFUL_TIMEOUT", "300"))
keepalive = 75  # long-lived SSE streams behind a proxy
max_requests = 1000
max_requests_jitter = 100
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
