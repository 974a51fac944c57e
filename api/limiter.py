"""
api/limiter.py -- The one slowapi Limiter for the whole app.

Limits are keyed by client IP and applied with @limiter.limit() on the
routes an attacker would hammer: login (password guessing), forgot-password
and resend-verification (mail flooding). The strings come from Settings so operators
can tune them without a deploy.

api/main.py registers this instance on app.state and mounts SlowAPIMiddleware.
Counters live in process memory; each worker counts on its own.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, key_prefix="plannr", storage_uri="memory://")
