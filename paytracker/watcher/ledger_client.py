from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from ..shared.errors import IntegrationError, Result


class LedgerClient:
    """Watcher-side calls into the ledger service HTTP API."""

    def __init__(self, base_url: str, ingest_token: str, timeout_s: float = 5.0,
                 session: Optional[requests.Session] = None):
        self.base_url = str(base_url or "").rstrip("/")
        self.ingest_token = ingest_token
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def _post(self, path: str, body: Dict[str, Any], token: str = "") -> Result:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            r = self.session.post(f"{self.base_url}{path}", json=body, headers=headers, timeout=self.timeout_s)
        except requests.RequestException as e:
            return Result.failure(IntegrationError(f"{type(e).__name__}: {e}"))
        try:
            data = r.json()
        except ValueError:
            data = {}
        if not 200 <= r.status_code < 300:
            msg = data.get("error") if isinstance(data, dict) else ""
            return Result.failure(IntegrationError(f"HTTP {r.status_code}: {msg or r.text[:180]}"))
        return Result.success(data)

    def report_payment(self, payer: str, amount: int) -> Result:
        return self._post("/report-payment", {"from": payer, "amount": int(amount)}, token=self.ingest_token)

    def link_account(self, username: str, code: str) -> Result:
        return self._post("/link-account", {"username": username, "linking_code": code})
