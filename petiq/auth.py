from fastapi import Depends, Header, HTTPException
from jose import jwt
from jose.exceptions import JOSEError

from petiq.config import DEMO_CUSTOMER_EMAIL, JWT_SECRET
from petiq.logging import customer_ctx

ADMIN_ROLE = "admin"


def verify_token(authorization: str | None = Header(None)) -> dict:
    if not authorization:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("bad scheme")
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except (ValueError, JOSEError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


async def customer_email(claims: dict = Depends(verify_token)) -> str:
    """Email that keys the caller's gateway customer."""
    email = (claims if isinstance(claims, dict) else {}).get("email") or DEMO_CUSTOMER_EMAIL
    customer_ctx.set(email)
    return email


def require_admin(claims: dict = Depends(verify_token)) -> dict:
    """Ledger and mirror maintenance is limited to tokens with the admin role."""
    if not isinstance(claims, dict) or claims.get("role") != ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="Admin role required")
    return claims
