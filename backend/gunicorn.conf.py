"""
Gunicorn settings for the support desk backend.

    gunicorn -c gunicorn.conf.py supportdesk.main:app
"""
import os

bind = f"0.0.0.0:{os.getenv('PORT', '8000')}"
worker_class = "uvicorn.workers.UvicornWorker"

# Task change events are fanned out in-process, so a WebSocket client only
# hears about writes handled by its own worker. Keep one worker unless the
# change feed is moved out of process.
workers = int(os.getenv('WEB_CONCURRENCY', '1'))

# handle-task-chat waits on the completion API including 429 retries
timeout = int(os.getenv('GUNICORN_TIMEOUT', '120'))
graceful_timeout = 30
keepalive = 5

max_requests = 2000
max_requests_jitter = 100

accesslog = "-"
errorlog = "-"
loglevel = os.getenv('LOG_LEVEL', 'info')
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(D)sus rid=%({x-request-id}o)s'

proc_name = 'supportdesk-backend'


def when_ready(server):
    server.log.info(f"Support desk backend listening on {bind} with {workers} worker(s)")
    if workers > 1:
        server.log.warning("More than one worker: live task updates only reach clients of the writing worker")


def post_fork(server, worker):
    server.log.info(f"Worker {worker.pid} started")
