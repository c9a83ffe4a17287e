"""Discord OAuth2 helpers used by the login routes."""

from __future__ import annotations

import secrets
from typing import Any, Dict, Iterable
from urllib.parse import urlencode

import requests

AUTHORIZE_URL = "https://discord.com/api/oauth2/authorize"
TOKEN_URL = "https://discord.com/api/oauth2/token"
USER_URL = "https://discord.com/api/users/@me"
DEFAULT_SCOPES = ("identify",)
REQUEST_TIMEOUT = 10  # seconds


class DiscordAuthError(RuntimeError):
    pass


def generate_state() -> str:
    return secrets.token_urlsafe(16)


def build_authorize_url(client_id: str, redirect_uri: str, state: str, scopes: Iterable[str] = DEFAULT_SCOPES) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes),
        "state": state,
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


def exchange_code(code: str, client_id: str, client_secret: str, redirect_uri: str) -> Dict[str, Any]:
    """Trade an authorization code for a token payload."""

    try:
        response = requests.post(
            TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            auth=(client_id, client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise DiscordAuthError(f"Failed to exchange token: {exc}") from exc

    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise DiscordAuthError("Failed to exchange token: no access token in response")
    return payload


def fetch_user(access_token: str) -> Dict[str, Any]:
    try:
        response = requests.get(
            USER_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise DiscordAuthError(f"Failed to get user info: {exc}") from exc

    if not isinstance(payload, dict) or not payload.get("id"):
        raise DiscordAuthError("Failed to get user info: response has no user id")
    return payload


def display_name(user: Dict[str, Any]) -> str:
    # Accounts migrated to unique usernames report discriminator "0"
    username = user.get("username") or ""
    discriminator = user.get("discriminator")
    if discriminator and discriminator != "0":
        return f"{username}#{discriminator}"
    return username
