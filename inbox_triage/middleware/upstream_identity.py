"""
Upstream identity.

Session management lives in the gateway in front of this service, which
forwards the authenticated user id in the X-User-Id header.
"""

from fastapi import Header, HTTPException, status


def user_id_dependency(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "missing_user", "message": "X-User-Id header is required"},
        )
    return x_user_id.strip()
