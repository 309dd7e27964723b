"""Auth service — access-token issuance for operators and service accounts.

Identity lives in the employee directory; this engine only needs a signed
principal (user id + role) to authorize point operations.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt

from discipline.common.constants import UserRole
from discipline.config import settings


def create_access_token(
    user_id: uuid.UUID,
    role: UserRole,
    *,
    expires_in: Optional[timedelta] = None,
) -> str:
    """Return an encoded access JWT for *user_id* acting as *role*."""
    lifetime = expires_in or timedelta(hours=settings.JWT_EXPIRY_HOURS)
    payload = {
        "sub": str(user_id),
        "role": role.value,
        "type": "access",
        "exp": datetime.now(timezone.utc) + lifetime,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
