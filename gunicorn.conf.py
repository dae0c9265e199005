"""Gunicorn settings for serving ``app:application``."""

import multiprocessing
import os

bind = os.getenv('GUNICORN_BIND', '0.0.0.0:8000')
workers = int(os.getenv('GUNICORN_WORKERS', max(2, min(8, 2 * multiprocessing.cpu_count() + 1))))
worker_class = 'sync'
timeout = 120
graceful_timeout = 30
keepalive = 5
max_requests = 1000
max_requests_jitter = 500

# Rate-limit buckets are per process unless RATE_LIMIT_STORAGE=redis
preload_app = True

accesslog = '-'
errorlog = '-'
loglevel = os.getenv('GUNICORN_LOG_LEVEL', 'info')
access_log_format = '%(h)s %(t)s "%(r)s" %(s)s %(b)s %(D)s "%({x-request-id}o)s"'

limit_request_line = 8192
limit_request_fields = 100
limit_request_field_size = 8192

proc_name = 'upface-crm'
