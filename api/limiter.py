"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route modules
that apply per-route limits with @limiter.limit() (login, public submissions).

Using a single shared instance ensures all routes share the same in-memory
counter store. Separate instances per module would each keep an isolated
counter and the limits would never trigger.

@limiter.limit() goes BELOW @router.<method>(): the router then registers the
wrapped endpoint, which enforces the limit itself and does not depend on
SlowAPIMiddleware finding the route.

Keyed on the raw connection address, not the forwarded-header resolution in
auth/audit.py: those headers are client-controlled and would let an attacker
rotate their rate-limit bucket per request.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
