"""
rate_limit.py — Global rate limiter instance.

Uses slowapi (a Starlette-compatible wrapper around the `limits` library).
Requests are keyed by client IP address.

Usage in routes:
    from fastapi import Request
    from pothole_map.core.rate_limit import limiter

    @router.post("/some-endpoint")
    @limiter.limit(settings.submit_rate_limit)
    async def my_endpoint(request: Request, payload: MyRequest):
        ...
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

# One bucket per client IP. Submissions are the only limited route; reads
# are cheap and the map refetches on every pan.
limiter = Limiter(key_func=get_remote_address)
