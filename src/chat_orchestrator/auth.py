"""Caller identification. Session management belongs to the hosted auth provider;
this module only maps a presented credential to a user id."""

from __future__ import annotations

from typing import Protocol

SESSION_COOKIE = "session"


class Authenticator(Protocol):
    def resolve_user(self, token: str) -> str | None: ...


class StaticTokenAuthenticator:
    """Accepts a fixed set of `token -> user_id` pairs."""

    def __init__(self, tokens: dict[str, str]) -> None:
        self._tokens = dict(tokens)

    def resolve_user(self, token: str) -> str | None:
        return self._tokens.get(token)


def extract_credential(authorization: str | None, session_cookie: str | None) -> str | None:
    """Prefer a bearer token; fall back to the session cookie."""
    if authorization:
        scheme, _, value = authorization.strip().partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    if session_cookie and session_cookie.strip():
        return session_cookie.strip()
    return None
