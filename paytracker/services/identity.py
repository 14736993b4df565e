from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests

from ..shared.errors import IntegrationError, Result

DISCORD_API = "https://discord.com/api"


class DiscordIdentity:
    """
    Discord OAuth2 "identify" flow, reduced to what the ledger needs:
    an authorize URL, and code -> (stable id, display tag).
    """

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str, timeout_s: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    @classmethod
    def from_cfg(cls, cfg: Dict[str, Any]) -> "DiscordIdentity":
        d = cfg.get("discord") or {}
        public_url = str((cfg.get("server") or {}).get("public_url") or "http://localhost:3000").rstrip("/")
        return cls(
            client_id=str(d.get("client_id") or ""),
            client_secret=str(d.get("client_secret") or ""),
            redirect_uri=str(d.get("redirect_uri") or f"{public_url}/api/discord/callback"),
            timeout_s=float(d.get("timeout_seconds") or 10),
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id)

    def authorize_url(self) -> str:
        query = urlencode({
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": "identify",
        })
        return f"{DISCORD_API}/oauth2/authorize?{query}"

    def resolve(self, code: str) -> Result:
        """Exchange an OAuth code and fetch the profile. Value: {"id", "tag"}."""
        try:
            r = self.session.post(
                f"{DISCORD_API}/oauth2/token",
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": self.redirect_uri,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout_s,
            )
            if r.status_code != 200:
                return Result.failure(IntegrationError(f"token exchange HTTP {r.status_code}: {r.text[:180]}"))
            access_token = r.json().get("access_token")
            if not access_token:
                return Result.failure(IntegrationError("token exchange returned no access_token"))

            me = self.session.get(
                f"{DISCORD_API}/users/@me",
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout_s,
            )
            if me.status_code != 200:
                return Result.failure(IntegrationError(f"profile fetch HTTP {me.status_code}: {me.text[:180]}"))
            user = me.json()
        except (requests.RequestException, ValueError) as e:
            return Result.failure(IntegrationError(f"{type(e).__name__}: {e}"))

        discord_id = str(user.get("id") or "")
        if not discord_id:
            return Result.failure(IntegrationError("profile has no id"))
        name = str(user.get("username") or "")
        disc = str(user.get("discriminator") or "0")
        tag = name if disc in ("", "0") else f"{name}#{disc}"
        return Result.success({"id": discord_id, "tag": tag})
