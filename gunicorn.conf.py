# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

import os

# One worker: the scheduler and the per-user sync queue live in-process
workers = 1
worker_class = 'gthread'
threads = 4
timeout = 300  # Full sync cycles over many technicians can be slow
keepalive = 2

# Bind to the port the platform provides
bind = f"0.0.0.0:{os.environ.get('PORT', '8080')}"

# Entry point: the app factory validates configuration before serving
wsgi_app = 'app:create_app()'

# Logging
loglevel = os.environ.get('LOG_LEVEL', 'info').lower()
accesslog = '-'
errorlog = '-'

# Don't preload - background threads must start inside the worker
preload_app = False

# Process naming
proc_name = 'st-calendar-sync'

max_requests = 0
max_requests_jitter = 0
