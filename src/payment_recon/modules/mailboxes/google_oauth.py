from __future__ import annotations

import urllib.parse
from typing import Any

import httpx

from payment_recon.core.config import settings
from payment_recon.core.errors import UpstreamUnavailable

_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"

GMAIL_READONLY_SCOPE = "https://www.googleapis.com/auth/gmail.readonly"
_SCOPES = ("openid", "email", "profile", GMAIL_READONLY_SCOPE)


def gmail_oauth_enabled() -> bool:
    return bool(settings.google_oauth_client_id and settings.google_oauth_client_secret)


def gmail_redirect_uri() -> str:
    return settings.gmail_redirect_uri or (
        f"{settings.base_url.rstrip('/')}/api/mailboxes/google/callback"
    )


def build_gmail_authorize_url(*, state: str, redirect_uri: str) -> str:
    if not gmail_oauth_enabled():
        raise RuntimeError("Google OAuth is not configured")

    params: dict[str, str] = {
        "client_id": settings.google_oauth_client_id or "",
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(_SCOPES),
        "state": state,
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
    }
    return f"{_GOOGLE_AUTH_URL}?{urllib.parse.urlencode(params)}"


def _token_request(data: dict[str, Any]) -> dict[str, Any]:
    try:
        with httpx.Client(timeout=settings.mail_http_timeout_seconds) as client:
            resp = client.post(_GOOGLE_TOKEN_URL, data=data)
    except httpx.HTTPError as e:
        raise UpstreamUnavailable("Google token endpoint unreachable") from e
    try:
        payload = resp.json()
    except ValueError as e:
        raise UpstreamUnavailable("Google token endpoint returned an invalid body") from e
    if resp.status_code >= 400:
        raise ValueError(f"Google token request failed: {payload.get('error')}")
    return payload


def exchange_gmail_code(*, code: str, redirect_uri: str) -> dict[str, Any]:
    if not gmail_oauth_enabled():
        raise RuntimeError("Google OAuth is not configured")
    return _token_request(
        {
            "code": code,
            "client_id": settings.google_oauth_client_id,
            "client_secret": settings.google_oauth_client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
    )


def refresh_gmail_token(*, refresh_token: str) -> dict[str, Any]:
    return _token_request(
        {
            "client_id": settings.google_oauth_client_id,
            "client_secret": settings.google_oauth_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
    )


def fetch_account_email(*, access_token: str) -> str | None:
    try:
        with httpx.Client(timeout=settings.mail_http_timeout_seconds) as client:
            resp = client.get(
                _GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
            )
        resp.raise_for_status()
    except httpx.HTTPError as e:
        raise UpstreamUnavailable("Google userinfo endpoint unreachable") from e
    email = resp.json().get("email")
    return email if isinstance(email, str) and email else None
