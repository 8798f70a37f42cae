import pytest

from src.config.settings import Settings, create_default_config, load_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "RUN_MODE",
        "RUN_ENABLE_TRADING",
        "RUN_LIVE_CONFIRM",
        "OKX_API_KEY",
        "OKX_SECRET_KEY",
        "OKX_PASSPHRASE",
        "CONFIG_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


def test_trading_gate_requires_enable_trading() -> None:
    settings = Settings(
        run={"mode": "demo", "enable_trading": False},
        okx_api_key="k",
        okx_secret_key="s",
        okx_passphrase="p",
        _env_file=None,
    )
    allowed, reasons = settings.trading_gate()
    assert not allowed
    assert reasons == ["RUN_ENABLE_TRADING_FALSE"]


def test_trading_gate_requires_credentials() -> None:
    settings = Settings(run={"mode": "demo", "enable_trading": True}, _env_file=None)
    allowed, reasons = settings.trading_gate()
    assert not allowed
    assert "OKX_API_KEY not set" in reasons
    assert "OKX_PASSPHRASE not set" in reasons


def test_trading_gate_requires_live_confirm() -> None:
    settings = Settings(
        run={"mode": "live", "enable_trading": True, "live_confirm": "nope"},
        okx_api_key="k",
        okx_secret_key="s",
        okx_passphrase="p",
        _env_file=None,
    )
    allowed, reasons = settings.trading_gate()
    assert not allowed
    assert "RUN_LIVE_CONFIRM missing/invalid" in reasons
    assert not settings.simulated_trading


def test_trading_gate_opens_in_demo() -> None:
    settings = Settings(
        run={"mode": "demo", "enable_trading": True},
        okx_api_key="k",
        okx_secret_key="s",
        okx_passphrase="p",
        _env_file=None,
    )
    assert settings.trading_gate() == (True, [])
    assert settings.simulated_trading


def test_orchestrator_simulates_when_gate_closed(build_orchestrator, settings_factory) -> None:
    orchestrator = build_orchestrator(settings_factory(enable_trading=False))
    assert orchestrator.simulate
    assert "RUN_ENABLE_TRADING_FALSE" in orchestrator.trading_block_reasons


def test_load_settings_from_yaml_with_env_overrides(workspace_tmp_path, monkeypatch) -> None:
    config_path = workspace_tmp_path / "config.yaml"
    create_default_config(config_path)
    monkeypatch.setenv("RUN_ENABLE_TRADING", "true")
    monkeypatch.setenv("OKX_API_KEY", "env-key")

    settings = load_settings(config_path)

    assert settings.run.mode == "demo"
    assert settings.run.enable_trading is True
    assert settings.okx_api_key == "env-key"
    assert settings.risk.cooldown_seconds == 60
    assert settings.risk.max_daily_trades == 500
    assert settings.trading.default_symbol == "DOGE-USDT"


def test_trading_assets_are_upper_cased() -> None:
    settings = Settings(trading={"default_coin": " btc ", "quote_asset": "usdc"}, _env_file=None)
    assert settings.trading.default_symbol == "BTC-USDC"


def test_default_config_omits_credentials(workspace_tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("OKX_API_KEY", "should-not-leak")
    config_path = workspace_tmp_path / "config.yaml"

    create_default_config(config_path)

    content = config_path.read_text()
    assert "should-not-leak" not in content
    assert "okx_api_key" not in content
    assert "protective_order_type: conditional" in content
