"""
Shared — request identity

Authentication happens at the gateway. Services receive the resolved
identity as headers (X-User-Id, X-User-Email, X-User-Role) plus the
caller's bearer token, which is forwarded to peer services.
"""

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    email: str
    role: str
    token: str

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"


def current_user(
    x_user_id: str = Header(...),
    x_user_email: str = Header(...),
    x_user_role: str = Header("USER"),
    authorization: str = Header(""),
) -> CurrentUser:
    token = authorization.removeprefix("Bearer ").strip()
    return CurrentUser(x_user_id, x_user_email, x_user_role.upper(), token)


def admin_user(user: CurrentUser = Depends(current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(403, "Admin access required")
    return user
