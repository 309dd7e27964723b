"""Rate limiting via slowapi.

The module-level Limiter is wired into the app in main.py; routers import
it to throttle expensive endpoints such as the manual expiration pass.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Per client IP; individual routes tighten this with @limiter.limit("N/period").
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["120/minute"],
)
