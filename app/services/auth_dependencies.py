import os

from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.models.company import Company
from app.services.companies import companies

ADMIN_ROLE = "ADMIN"


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def _jwt_secret() -> str:
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise HTTPException(status_code=401, detail="Authentication is not configured")
    return secret


def _jwt_algorithm() -> str:
    return os.getenv("JWT_ALGORITHM", "HS256")


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, _jwt_secret(), algorithms=[_jwt_algorithm()])
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid or expired token provided.") from exc


def require_user_auth(
    authorization: str | None = Header(default=None),
    request: Request = None,
) -> dict:
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Invalid Authentication")
    payload = decode_access_token(token)
    user_id = payload.get("sub")
    company_id = payload.get("company_id")
    email = payload.get("email")
    if not user_id or not company_id or not email:
        raise HTTPException(status_code=401, detail="Invalid Authentication")
    if request is not None:
        request.state.actor_id = str(user_id)
    return {
        "user_id": str(user_id),
        "company_id": str(company_id),
        "email": str(email),
        "role": str(payload.get("role") or ""),
    }


def require_company_admin(
    auth: dict = Depends(require_user_auth),
    db: Session = Depends(get_db),
) -> Company:
    """Resolve the caller's company; only company admins manage billing."""
    if auth["role"].upper() != ADMIN_ROLE:
        raise HTTPException(
            status_code=403, detail="You are not authorized to perform this action"
        )
    return companies.get_for_owner(db, auth["company_id"], auth["email"])
