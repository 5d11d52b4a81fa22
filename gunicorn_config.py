"""
Gunicorn configuration for HABPREDICT deployment.

Thread-based workers: simulations are CPU-light and short, and threads within
a worker share the prediction and forecast caches in simulate.py.
"""
import os
import logging

# Network binding
bind = f"0.0.0.0:{os.getenv('PORT', '8000')}"
backlog = 256

# Worker configuration
workers = int(os.getenv('WEB_CONCURRENCY', '2'))
worker_class = 'gthread'
threads = 8

# Restart workers periodically to bound cache growth
max_requests = 1000
max_requests_jitter = 100

timeout = 120  # live analysis re-runs a full descent, well under a minute
keepalive = 30

preload_app = True

# Logging
accesslog = '-'
errorlog = '-'
loglevel = os.getenv('LOG_LEVEL', 'warning')
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

proc_name = 'habpredict'


def post_fork(server, worker):
    """
    Initialize each worker process after forking.

    With preload_app=True the caches were created in the master process; each
    worker starts from empty caches and installs the /sim/status access log filter.
    """
    from app import StatusLogFilter
    import simulate

    logging.getLogger('gunicorn.access').addFilter(StatusLogFilter())
    simulate.clear_cache()
    print(f"[WORKER {worker.pid}] Worker ready", flush=True)
