"""
LND REST wallet backend.

Env:
  LND_REST_URL      e.g. https://127.0.0.1:8080
  LND_MACAROON_HEX  admin (or invoice+payment) macaroon, hex
  LND_TLS_CERT      path to tls.cert; omit to use system CAs

Calls are blocking `requests` calls run in a worker thread so the event loop
never waits on the node.
"""

import asyncio
import base64
import os
from typing import Any, Dict, Optional, Union

import requests
from dotenv import load_dotenv

from dvmpay.errors import ConfigError, NetworkError, PaymentError
from dvmpay.payments import Invoice, InvoiceState, PaymentReceipt

ENV_URL = "LND_REST_URL"
ENV_MACAROON = "LND_MACAROON_HEX"
ENV_TLS_CERT = "LND_TLS_CERT"

_STATES: Dict[str, InvoiceState] = {
    "OPEN": "pending",
    "ACCEPTED": "pending",
    "SETTLED": "paid",
    "CANCELED": "expired",
}


def _b64_to_hex(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return base64.b64decode(value).hex()


class LndRestWallet:
    def __init__(self, url: str, macaroon_hex: str, tls_cert: Optional[str] = None, http_timeout: float = 15.0):
        self.url = url.rstrip("/")
        self._headers = {"Grpc-Metadata-macaroon": macaroon_hex}
        self._verify: Union[str, bool] = tls_cert or True
        self.http_timeout = http_timeout

    @classmethod
    def from_env(cls) -> "LndRestWallet":
        load_dotenv(override=False)
        url = os.getenv(ENV_URL)
        macaroon = os.getenv(ENV_MACAROON)
        if not url or not macaroon:
            raise ConfigError(f"Set {ENV_URL} and {ENV_MACAROON} to use the LND wallet")
        return cls(url, macaroon.strip(), os.getenv(ENV_TLS_CERT) or None)

    def _request(self, method: str, path: str, timeout: float, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            r = requests.request(
                method,
                f"{self.url}{path}",
                headers=self._headers,
                json=body,
                verify=self._verify,
                timeout=timeout,
            )
        except requests.RequestException as e:
            raise NetworkError(f"LND {method} {path} failed: {e}", cause=e) from e
        if r.status_code >= 400:
            raise NetworkError(f"LND {method} {path} returned {r.status_code}: {r.text[:200]}")
        return r.json()

    def _pay_sync(self, invoice: str, max_fee_sats: int, timeout_seconds: int) -> PaymentReceipt:
        try:
            data = self._request(
                "POST",
                "/v1/channels/transactions",
                timeout=timeout_seconds,
                body={"payment_request": invoice, "fee_limit": {"fixed": str(max_fee_sats)}},
            )
        except NetworkError as e:
            raise PaymentError(f"Payment did not go through: {e}", cause=e) from e
        if data.get("payment_error"):
            raise PaymentError(f"LND refused payment: {data['payment_error']}")
        route = data.get("payment_route") or {}
        return PaymentReceipt(
            payment_hash=_b64_to_hex(data.get("payment_hash")),
            preimage=_b64_to_hex(data.get("payment_preimage")),
            amount_sats=int(route["total_amt"]) if route.get("total_amt") else None,
            fee_sats=int(route.get("total_fees") or 0),
        )

    async def pay_invoice(self, invoice: str, max_fee_sats: int, timeout_seconds: int) -> PaymentReceipt:
        return await asyncio.to_thread(self._pay_sync, invoice, max_fee_sats, timeout_seconds)

    def _create_sync(self, amount_sats: int, memo: str, expiry_seconds: int) -> Invoice:
        data = self._request(
            "POST",
            "/v1/invoices",
            timeout=self.http_timeout,
            body={"value": str(amount_sats), "memo": memo, "expiry": str(expiry_seconds)},
        )
        bolt11 = data.get("payment_request")
        r_hash = _b64_to_hex(data.get("r_hash"))
        if not bolt11 or not r_hash:
            raise NetworkError("LND AddInvoice response is missing payment_request or r_hash")
        return Invoice(bolt11=bolt11, payment_hash=r_hash, amount_sats=amount_sats, memo=memo)

    async def create_invoice(self, amount_sats: int, memo: str, expiry_seconds: int = 3600) -> Invoice:
        return await asyncio.to_thread(self._create_sync, amount_sats, memo, expiry_seconds)

    def _status_sync(self, invoice: Invoice) -> InvoiceState:
        data = self._request("GET", f"/v1/invoice/{invoice.payment_hash}", timeout=self.http_timeout)
        return _STATES.get(str(data.get("state", "")).upper(), "error")

    async def check_invoice_status(self, invoice: Invoice) -> InvoiceState:
        return await asyncio.to_thread(self._status_sync, invoice)
