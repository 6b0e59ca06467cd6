import hmac
from typing import Optional

from fastapi import Header, HTTPException, status

from config import settings


def check_control_secret(provided: Optional[str], expected: Optional[str]) -> None:
    """
    Constant-time comparison of the operator shared secret.
    """
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Control secret not configured",
        )
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid control secret",
        )


def require_control_secret(
    x_control_secret: Optional[str] = Header(default=None),
) -> None:
    """
    Dependency guarding the /internal endpoints.
    Header: x-control-secret
    """
    check_control_secret(x_control_secret, settings.CONTROL_WORKER_SHARED_SECRET)
