"""
Lightning wallet backends: LND REST (default). The wallet is only reached
through the Wallet protocol, so tests and other nodes can plug in.
"""

from typing import Literal, Optional, Protocol

from pydantic import BaseModel, Field

InvoiceState = Literal["pending", "paid", "expired", "error"]


class Invoice(BaseModel):
    bolt11: str
    payment_hash: str = Field(..., description="hex")
    amount_sats: int
    memo: Optional[str] = None


class PaymentReceipt(BaseModel):
    payment_hash: Optional[str] = None
    preimage: Optional[str] = None
    amount_sats: Optional[int] = None
    fee_sats: int = 0


class Wallet(Protocol):
    async def pay_invoice(self, invoice: str, max_fee_sats: int, timeout_seconds: int) -> PaymentReceipt:
        """Pay a BOLT11 invoice. Raises PaymentError on any failure."""
        ...

    async def create_invoice(self, amount_sats: int, memo: str, expiry_seconds: int = 3600) -> Invoice:
        ...

    async def check_invoice_status(self, invoice: Invoice) -> InvoiceState:
        ...


def get_wallet(name: str = "lnd") -> Wallet:
    """
    Single entry point: returns a wallet configured from the environment.

    Args:
        name: "lnd"
    """
    if name == "lnd":
        from dvmpay.payments.lnd import LndRestWallet

        return LndRestWallet.from_env()
    from dvmpay.errors import ConfigError

    raise ConfigError(f"Unknown wallet backend {name!r}; supported: lnd")


__all__ = [
    "Invoice",
    "InvoiceState",
    "PaymentReceipt",
    "Wallet",
    "get_wallet",
]
