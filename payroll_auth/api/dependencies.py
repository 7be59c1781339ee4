# payroll_auth/api/dependencies.py
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_auth.core import security
from payroll_auth.core.exceptions import Unauthorized
from payroll_auth.crud.crud_user import user as crud_user
from payroll_auth.db.session import get_db
from payroll_auth.models.user import User as UserModel

# auto_error=False: a missing header must produce our own "unauthorized" body
bearer_scheme = HTTPBearer(
    auto_error=False,
    description="Session token returned by /auth/login or /auth/mfa/verify, e.g. 'Bearer eyJ...'",
)


async def get_current_user_from_token(
    db: AsyncSession = Depends(get_db),
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> UserModel:
    if creds is None or creds.scheme.lower() != "bearer":
        raise Unauthorized("Missing or invalid authorization header. Use 'Bearer'.")

    payload = security.decode_access_token(creds.credentials)
    if payload is None:
        raise Unauthorized()

    user_id_str = payload.get("sub")
    if user_id_str is None:
        raise Unauthorized()
    try:
        user_id = int(user_id_str)
    except ValueError:
        raise Unauthorized()

    user = await crud_user.get(db, id=user_id)
    if user is None:
        raise Unauthorized()
    return user


async def get_current_active_user(
    current_user: UserModel = Depends(get_current_user_from_token),
) -> UserModel:
    if not current_user.is_active:
        raise Unauthorized("Inactive account.")
    return current_user
