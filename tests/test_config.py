import logging

import pytest

from dvmpay.config import DVMProviderConfig, load_settings
from dvmpay.errors import ConfigError
from dvmpay.logs import JSONFormatter, setup_logging
from dvmpay.telemetry import RecordingMetricsSink, track_safely

PUBKEY = "ab" * 32


def test_defaults_without_env():
    settings = load_settings({})
    assert settings.dvm is None
    assert settings.payment.auto_pay_max_sats == 10
    assert settings.payment.resume == "optimistic"
    assert settings.provider.kinds == [5050]
    assert settings.wallet == "lnd"
    assert settings.network.relays


def test_env_values_are_parsed():
    settings = load_settings(
        {
            "DVMPAY_RELAYS": "wss://a.example, wss://b.example",
            "DVMPAY_DVM_PUBKEY": PUBKEY.upper(),
            "DVMPAY_REQUEST_KIND": "5100",
            "DVMPAY_ENCRYPT": "false",
            "DVMPAY_MAX_TOKENS": "200",
            "DVMPAY_AUTO_PAY_MAX_SATS": "25",
            "DVMPAY_PAYMENT_RESUME": "confirm",
            "DVMPAY_PROVIDER_KINDS": "5050,5100",
            "DVMPAY_LOG_JSON": "true",
        }
    )
    assert settings.network.relays == ["wss://a.example", "wss://b.example"]
    assert settings.dvm.dvm_pubkey == PUBKEY
    assert settings.dvm.relays == settings.network.relays
    assert settings.dvm.request_kind == 5100
    assert settings.dvm.requires_encryption is False
    assert settings.dvm.max_tokens == 200
    assert settings.payment.auto_pay_max_sats == 25
    assert settings.payment.resume == "confirm"
    assert settings.provider.kinds == [5050, 5100]
    assert settings.log_json is True


@pytest.mark.parametrize(
    "env",
    [
        {"DVMPAY_DVM_PUBKEY": "npub1notahexkey"},
        {"DVMPAY_DVM_PUBKEY": PUBKEY, "DVMPAY_REQUEST_KIND": "6050"},
        {"DVMPAY_AUTO_PAY_MAX_SATS": "-5"},
        {"DVMPAY_PAYMENT_RESUME": "eventually"},
        {"DVMPAY_PROVIDER_KINDS": "7000"},
    ],
)
def test_invalid_values_raise_config_error(env):
    with pytest.raises(ConfigError):
        load_settings(env)


def test_provider_config_requires_hex_pubkey():
    with pytest.raises(ValueError):
        DVMProviderConfig(dvm_pubkey="not-a-key")


def test_json_log_formatter():
    record = logging.LogRecord("dvmpay.test", logging.INFO, __file__, 10, "job %s done", ("abc",), None)
    line = JSONFormatter().format(record)
    assert '"message": "job abc done"' in line
    assert '"level": "INFO"' in line


def test_setup_logging_replaces_handlers():
    logger = setup_logging("debug", json_format=True, name="dvmpay.test.setup")
    setup_logging("debug", json_format=True, name="dvmpay.test.setup")
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0].formatter, JSONFormatter)


def test_broken_metrics_sink_never_raises():
    class Broken:
        def track(self, *args):
            raise RuntimeError("sink down")

    track_safely(Broken(), "nip90", "stream_started")
    sink = RecordingMetricsSink()
    track_safely(sink, "payment", "auto_pay_success", "job", 3)
    assert sink.events == [("payment", "auto_pay_success", "job", 3)]
