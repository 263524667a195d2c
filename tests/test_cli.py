import pytest

from dvmpay import cli
from dvmpay.keys import ENV_PRIVATE_KEY


def _run(monkeypatch, *argv):
    monkeypatch.setattr(cli, "_load_dotenv", lambda: None)
    monkeypatch.setattr("sys.argv", ["dvmpay", *argv])
    cli.main()


def test_keygen_prints_env_line(monkeypatch, capsys):
    _run(monkeypatch, "keygen")
    out = capsys.readouterr().out
    assert "pubkey:" in out
    assert f"{ENV_PRIVATE_KEY}=" in out


def test_unknown_command_exits_1(monkeypatch, capsys):
    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch, "dance")
    assert exc.value.code == 1
    assert "Unknown command" in capsys.readouterr().out


def test_ask_without_dvm_is_config_error(monkeypatch, capsys):
    monkeypatch.setattr("dvmpay.config.load_dotenv", lambda **kw: False)
    monkeypatch.delenv("DVMPAY_DVM_PUBKEY", raising=False)
    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch, "ask", "hello")
    assert exc.value.code == 2
    assert "[ConfigError]" in capsys.readouterr().out
