"""Gunicorn configuration for the Loja Social stock service."""
import os

bind = os.getenv("GUNICORN_BIND", "0.0.0.0:5000")

# Per-item stock locks live in-process; across workers the versioned item row
# turns overlapping writes into commit retries.
workers = int(os.getenv("GUNICORN_WORKERS", "2"))
threads = int(os.getenv("GUNICORN_THREADS", "4"))

accesslog = os.getenv("GUNICORN_ACCESS_LOGFILE", "-")
errorlog = os.getenv("GUNICORN_ERROR_LOGFILE", "-")

forwarded_allow_ips = os.getenv("GUNICORN_FORWARDED_ALLOW_IPS", "*")
