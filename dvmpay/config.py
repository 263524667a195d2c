"""
Configuration from the environment (and .env via python-dotenv).

Env:
  DVMPAY_RELAYS              comma-separated relay URLs
  DVMPAY_REQUEST_TIMEOUT     seconds for publish/query round trips (default 10)
  DVMPAY_DVM_PUBKEY          target DVM (hex); needed for `dvmpay ask`
  DVMPAY_REQUEST_KIND        5000-5999 (default 5050, text generation)
  DVMPAY_ENCRYPT             true/false (default true)
  DVMPAY_EPHEMERAL           fresh keypair per request (default true)
  DVMPAY_MODEL / DVMPAY_TEMPERATURE / DVMPAY_MAX_TOKENS / DVMPAY_BID_MSATS
  DVMPAY_STREAM_BUFFER       max buffered chunks per stream (default 256)
  DVMPAY_AUTO_PAY_MAX_SATS   auto-pay threshold (default 10)
  DVMPAY_MAX_FEE_SATS        routing fee cap (default 10)
  DVMPAY_PAY_TIMEOUT         wallet timeout seconds (default 60)
  DVMPAY_PAYMENT_RESUME      optimistic | confirm
  DVMPAY_WALLET              wallet backend (default lnd)
  DVMPAY_PROVIDER_KINDS      kinds the provider serves (default 5050)
  DVMPAY_MIN_PRICE_SATS / DVMPAY_PRICE_PER_1K_TOKENS / DVMPAY_INVOICE_TIMEOUT
  DVMPAY_HISTORY_PORT        provider history server port (default 8090)
  OLLAMA_BASE_URL / OLLAMA_MODEL
  DVMPAY_LOG_LEVEL / DVMPAY_LOG_JSON
"""

import os
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from dvmpay.errors import ConfigError
from dvmpay.events import is_request_kind
from dvmpay.keys import is_hex_key
from dvmpay.payments.handler import PaymentPolicy
from dvmpay.transport.relay import DEFAULT_RELAYS


class NetworkSettings(BaseModel):
    relays: List[str] = Field(default_factory=lambda: list(DEFAULT_RELAYS))
    request_timeout: float = Field(10.0, gt=0)


class DVMProviderConfig(BaseModel):
    """How to reach one DVM and what to ask it for."""

    dvm_pubkey: str
    relays: List[str] = Field(default_factory=lambda: list(DEFAULT_RELAYS))
    request_kind: int = 5050
    requires_encryption: bool = True
    use_ephemeral_requests: bool = True
    model_identifier: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(None, gt=0)
    bid_msats: Optional[int] = Field(None, ge=0)
    output: Optional[str] = "text/plain"
    stream_buffer: int = Field(256, gt=0)

    @field_validator("dvm_pubkey")
    @classmethod
    def _hex_pubkey(cls, v: str) -> str:
        v = v.strip().lower()
        if not is_hex_key(v):
            raise ValueError("dvm_pubkey must be a 64-char hex pubkey")
        return v

    @field_validator("request_kind")
    @classmethod
    def _request_kind(cls, v: int) -> int:
        if not is_request_kind(v):
            raise ValueError("request_kind must be in 5000-5999")
        return v


class ProviderSettings(BaseModel):
    """Pricing and runtime knobs for running as a DVM."""

    kinds: List[int] = Field(default_factory=lambda: [5050])
    min_price_sats: int = Field(10, ge=0)
    price_per_1k_tokens: float = Field(2.0, ge=0)
    default_output_tokens: int = Field(256, gt=0)
    invoice_timeout_seconds: int = Field(600, gt=0)
    payment_poll_interval: float = Field(2.0, gt=0)
    stream_partials: bool = True
    history_port: int = 8090
    ollama_base_url: Optional[str] = None
    ollama_model: Optional[str] = None

    @field_validator("kinds")
    @classmethod
    def _kinds(cls, v: List[int]) -> List[int]:
        bad = [k for k in v if not is_request_kind(k)]
        if bad:
            raise ValueError(f"provider kinds must be in 5000-5999: {bad}")
        return v


class Settings(BaseModel):
    network: NetworkSettings = Field(default_factory=NetworkSettings)
    dvm: Optional[DVMProviderConfig] = None
    payment: PaymentPolicy = Field(default_factory=PaymentPolicy)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    wallet: str = "lnd"
    log_level: str = "INFO"
    log_json: bool = False


def _csv(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    items = [v.strip() for v in value.split(",") if v.strip()]
    return items or None


def _put(target: Dict[str, Any], key: str, value: Any) -> None:
    if value is not None and value != "":
        target[key] = value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from env (os.environ after loading .env by default).
    Raises ConfigError on invalid values.
    """
    if env is None:
        load_dotenv(override=False)
        env = os.environ
    get = env.get

    network: Dict[str, Any] = {}
    _put(network, "relays", _csv(get("DVMPAY_RELAYS")))
    _put(network, "request_timeout", get("DVMPAY_REQUEST_TIMEOUT"))

    payment: Dict[str, Any] = {}
    _put(payment, "auto_pay_max_sats", get("DVMPAY_AUTO_PAY_MAX_SATS"))
    _put(payment, "max_fee_sats", get("DVMPAY_MAX_FEE_SATS"))
    _put(payment, "timeout_seconds", get("DVMPAY_PAY_TIMEOUT"))
    _put(payment, "resume", get("DVMPAY_PAYMENT_RESUME"))

    provider: Dict[str, Any] = {}
    kinds = _csv(get("DVMPAY_PROVIDER_KINDS"))
    _put(provider, "kinds", kinds)
    _put(provider, "min_price_sats", get("DVMPAY_MIN_PRICE_SATS"))
    _put(provider, "price_per_1k_tokens", get("DVMPAY_PRICE_PER_1K_TOKENS"))
    _put(provider, "invoice_timeout_seconds", get("DVMPAY_INVOICE_TIMEOUT"))
    _put(provider, "history_port", get("DVMPAY_HISTORY_PORT"))
    _put(provider, "ollama_base_url", get("OLLAMA_BASE_URL"))
    _put(provider, "ollama_model", get("OLLAMA_MODEL"))

    data: Dict[str, Any] = {"network": network, "payment": payment, "provider": provider}
    _put(data, "wallet", get("DVMPAY_WALLET"))
    _put(data, "log_level", get("DVMPAY_LOG_LEVEL"))
    _put(data, "log_json", get("DVMPAY_LOG_JSON"))

    dvm_pubkey = get("DVMPAY_DVM_PUBKEY")
    if dvm_pubkey:
        dvm: Dict[str, Any] = {"dvm_pubkey": dvm_pubkey}
        _put(dvm, "relays", network.get("relays"))
        _put(dvm, "request_kind", get("DVMPAY_REQUEST_KIND"))
        _put(dvm, "requires_encryption", get("DVMPAY_ENCRYPT"))
        _put(dvm, "use_ephemeral_requests", get("DVMPAY_EPHEMERAL"))
        _put(dvm, "model_identifier", get("DVMPAY_MODEL"))
        _put(dvm, "temperature", get("DVMPAY_TEMPERATURE"))
        _put(dvm, "max_tokens", get("DVMPAY_MAX_TOKENS"))
        _put(dvm, "bid_msats", get("DVMPAY_BID_MSATS"))
        _put(dvm, "stream_buffer", get("DVMPAY_STREAM_BUFFER"))
        data["dvm"] = dvm

    try:
        return Settings.model_validate(data)
    except PydanticValidationError as e:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise ConfigError(f"Invalid configuration: {problems}", cause=e) from e
