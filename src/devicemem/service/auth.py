from __future__ import annotations

from typing import Protocol

from devicemem.domain.errors import AuthRequiredError


class AuthProvider(Protocol):
    def current_user_id(self) -> str | None:
        ...

    def is_authenticated(self) -> bool:
        ...


class StaticAuthProvider:
    """Single local user taken from settings. An empty id means signed out."""

    def __init__(self, user_id: str | None) -> None:
        self._user_id = (user_id or "").strip() or None

    def current_user_id(self) -> str | None:
        return self._user_id

    def is_authenticated(self) -> bool:
        return self._user_id is not None

    def sign_in(self, user_id: str) -> None:
        self._user_id = (user_id or "").strip() or None

    def sign_out(self) -> None:
        self._user_id = None


def require_owner(auth: AuthProvider) -> str:
    user_id = auth.current_user_id() if auth.is_authenticated() else None
    if not user_id:
        raise AuthRequiredError()
    return user_id
