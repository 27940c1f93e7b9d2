"""Client for the external ledger that mints certificate tokens.

The ledger is an opaque transaction submitter: it receives certificate
metadata and answers with the token coordinates once the mint transaction is
accepted. Every request carries an ``Idempotency-Key`` so a retried submission
cannot mint twice on the ledger side.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

log = logging.getLogger(__name__)

_USER_AGENT = "credchain/0.1"
_TIMEOUT = 30.0


class LedgerCallError(Exception):
    """Ledger call failed or returned an unusable response."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@dataclass
class IssuanceReceipt:
    token_address: str
    token_id: str
    tx_hash: str
    metadata_uri: str = ""


class LedgerClient:
    """Async JSON client for ``POST {LEDGER_URL}/certificates``."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = _TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or os.environ.get("LEDGER_URL", "http://localhost:8545")).rstrip("/")
        self._api_key = api_key or os.environ.get("LEDGER_API_KEY", "")
        self._timeout = timeout
        self._transport = transport

    def _headers(self, idempotency_key: str) -> dict[str, str]:
        headers = {"User-Agent": _USER_AGENT, "Idempotency-Key": idempotency_key}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def submit(self, request: dict[str, Any], idempotency_key: str) -> IssuanceReceipt:
        """Submit a certificate issuance request, return the mint receipt."""
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                headers=self._headers(idempotency_key),
                transport=self._transport,
            ) as client:
                resp = await client.post(f"{self.base_url}/certificates", json=request)
        except httpx.HTTPError as exc:
            raise LedgerCallError(f"Ledger request failed: {exc}", retryable=True) from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            raise LedgerCallError(f"Ledger returned HTTP {resp.status_code}", retryable=True)
        if resp.status_code >= 400:
            raise LedgerCallError(f"Ledger rejected request: HTTP {resp.status_code} {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise LedgerCallError(f"Ledger returned invalid JSON: {resp.text[:200]}") from exc
        if not isinstance(data, dict):
            raise LedgerCallError("Ledger response is not a JSON object")
        missing = [k for k in ("token_address", "token_id", "tx_hash") if not data.get(k)]
        if missing:
            raise LedgerCallError(f"Ledger response missing fields: {', '.join(missing)}")
        return IssuanceReceipt(
            token_address=str(data["token_address"]),
            token_id=str(data["token_id"]),
            tx_hash=str(data["tx_hash"]),
            metadata_uri=str(data.get("metadata_uri") or ""),
        )
