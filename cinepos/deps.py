from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from sqlalchemy.orm import Session
from cinepos.config import settings
from cinepos.db import get_db
from cinepos.errors import AuthenticationFailed, Forbidden
from cinepos.models.core import User

auth_scheme = HTTPBearer(auto_error=False)

ADMIN_ROLES = {"SUPER_ADMIN", "THEATER_ADMIN"}


def decode_token(token: str) -> str:
    try:
        data = jwt.decode(token, settings.APP_SECRET, algorithms=["HS256"], options={"verify_aud": False})
        return data["sub"]
    except (jwt.PyJWTError, KeyError):
        raise AuthenticationFailed("Invalid token")


def require_auth(creds: HTTPAuthorizationCredentials | None = Depends(auth_scheme)) -> str:
    if not creds:
        raise AuthenticationFailed("Not authenticated")
    return decode_token(creds.credentials)


def current_user(sub: str = Depends(require_auth), db: Session = Depends(get_db)) -> User:
    user = db.get(User, sub)
    if not user or not user.active:
        raise AuthenticationFailed("Unknown or inactive user")
    return user


def require_theater_access(user: User, theater_id: str):
    # super admins (theater_id None) see every theater
    if user.theater_id is not None and user.theater_id != theater_id:
        raise Forbidden("No access to this theater", theaterId=theater_id)


def require_role(*roles: str):
    wanted = set(roles)

    def _dep(user: User = Depends(current_user)) -> User:
        if user.role not in wanted:
            raise Forbidden(f"role {user.role} may not do this", requiredRoles=sorted(wanted))
        return user
    return _dep
