# backend/gunicorn_conf.py

# Gunicorn config for the auto-reply API: gunicorn -c gunicorn_conf.py

wsgi_app = "autoreply.main:app"
bind = "0.0.0.0:8000"
workers = 2
worker_class = "uvicorn.workers.UvicornWorker"

# Running behind a reverse proxy
forwarded_allow_ips = "*"

# --- Logging ---
# Access and error logs go to stdout and stderr; application logs are
# rendered by structlog (see autoreply/utils/logging.py).
accesslog = "-"
errorlog = "-"
loglevel = "info"
