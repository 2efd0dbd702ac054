"""
Tests for the PerpX TOML configuration loader.
"""

import pytest

from perpx.config.loader import MarketConfig, PerpXConfig, load_config
from perpx.exceptions import ConfigurationError

from conftest import USD

ENV_VARS = (
    "PERPX_CONFIG",
    "PERPX_MAX_BALANCE",
    "PERPX_MAX_EXPOSURE",
    "PERPX_MAX_PRICE_AGE",
    "PERPX_LIQUIDATION_INTERVAL",
    "PERPX_BRIDGE_OPTIMISTIC",
    "PERPX_LOG_LEVEL",
)

SAMPLE = """
[ledger]
max_balance = "250.5"
max_exposure = 1000
max_price_age = 120

[[markets]]
symbol = "SOL/USD"
max_leverage = 5
maintenance_margin_bps = 800

[automation]
interval_seconds = 3600
event_trigger = false

[bridge]
optimistic = false
chain = "ETHEREUM_SEPOLIA"

[logging]
level = "debug"
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(SAMPLE)
    return path


class TestDefaults:

    def test_default_values(self):
        cfg = PerpXConfig()
        assert cfg.ledger.max_balance == 100 * USD
        assert cfg.ledger.max_exposure == 300 * USD
        assert cfg.ledger.max_price_age == 0
        assert [m.symbol for m in cfg.markets] == ["BTC/USD", "ETH/USD"]
        assert cfg.markets[0].max_leverage == 3
        assert cfg.markets[0].maintenance_margin_bps == 500
        assert cfg.automation.interval_seconds == 6 * 3600
        assert cfg.bridge.chain == "AVALANCHE_FUJI"
        assert cfg.bridge.fee_token == "LINK"
        assert cfg.validate()

    def test_empty_dict_matches_defaults(self):
        assert PerpXConfig.from_dict({}).to_dict() == PerpXConfig().to_dict()

    def test_to_dict_renders_dollars(self):
        data = PerpXConfig().to_dict()
        assert data["ledger"]["max_balance"] == "100"
        assert data["ledger"]["max_exposure"] == "300"
        assert data["logging"]["level"] == "INFO"


class TestFromFile:

    def test_loads_sections(self, config_file):
        cfg = PerpXConfig.from_file(str(config_file))
        assert cfg.ledger.max_balance == 250_500_000
        assert cfg.ledger.max_exposure == 1000 * USD
        assert cfg.ledger.max_price_age == 120
        assert cfg.markets == [MarketConfig(symbol="SOL/USD", max_leverage=5, maintenance_margin_bps=800)]
        assert cfg.automation.interval_seconds == 3600
        assert not cfg.automation.event_trigger
        assert not cfg.bridge.optimistic
        assert cfg.bridge.chain == "ETHEREUM_SEPOLIA"
        assert cfg.logging.level == "DEBUG"
        assert cfg.validate()

    def test_missing_file_uses_defaults(self, tmp_path):
        cfg = PerpXConfig.from_file(str(tmp_path / "absent.toml"))
        assert cfg.to_dict() == PerpXConfig().to_dict()

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "broken.toml"
        path.write_text("[ledger\nmax_balance = ")
        with pytest.raises(ConfigurationError, match="Invalid TOML"):
            PerpXConfig.from_file(str(path))

    def test_market_without_symbol(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[[markets]]\nmax_leverage = 2\n")
        with pytest.raises(ConfigurationError, match="symbol"):
            PerpXConfig.from_file(str(path))

    def test_bad_usd_amount(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[ledger]\nmax_balance = "lots"\n')
        with pytest.raises(ConfigurationError, match="max_balance"):
            PerpXConfig.from_file(str(path))


class TestEnvOverrides:

    def test_overrides_file(self, config_file, monkeypatch):
        monkeypatch.setenv("PERPX_MAX_BALANCE", "75")
        monkeypatch.setenv("PERPX_MAX_PRICE_AGE", "30")
        monkeypatch.setenv("PERPX_LIQUIDATION_INTERVAL", "600")
        monkeypatch.setenv("PERPX_BRIDGE_OPTIMISTIC", "true")
        monkeypatch.setenv("PERPX_LOG_LEVEL", "warning")

        cfg = PerpXConfig.from_file(str(config_file))
        assert cfg.ledger.max_balance == 75 * USD
        assert cfg.ledger.max_price_age == 30
        assert cfg.automation.interval_seconds == 600
        assert cfg.bridge.optimistic
        assert cfg.logging.level == "WARNING"

    def test_optimistic_off(self, monkeypatch):
        monkeypatch.setenv("PERPX_BRIDGE_OPTIMISTIC", "0")
        cfg = PerpXConfig()
        cfg.apply_env()
        assert not cfg.bridge.optimistic

    def test_non_integer_env(self, monkeypatch):
        monkeypatch.setenv("PERPX_MAX_PRICE_AGE", "soon")
        with pytest.raises(ConfigurationError, match="PERPX_MAX_PRICE_AGE"):
            PerpXConfig().apply_env()

    def test_load_config_from_env_path(self, config_file, monkeypatch):
        monkeypatch.setenv("PERPX_CONFIG", str(config_file))
        assert load_config().ledger.max_price_age == 120

    def test_load_config_explicit_path_wins(self, config_file, monkeypatch, tmp_path):
        monkeypatch.setenv("PERPX_CONFIG", str(tmp_path / "absent.toml"))
        assert load_config(str(config_file)).bridge.chain == "ETHEREUM_SEPOLIA"


class TestValidate:

    @pytest.mark.parametrize("mutate, message", [
        (lambda c: setattr(c.ledger, "max_balance", 0), "max_balance"),
        (lambda c: setattr(c.ledger, "max_price_age", -1), "max_price_age"),
        (lambda c: c.markets.append(MarketConfig(symbol="BTC/USD")), "Duplicate"),
        (lambda c: setattr(c.markets[0], "max_leverage", 0), "max_leverage"),
        (lambda c: setattr(c.markets[0], "maintenance_margin_bps", 10_000), "maintenance_margin_bps"),
        (lambda c: setattr(c.automation, "interval_seconds", 0), "interval_seconds"),
        (lambda c: setattr(c.randomizer, "refresh_interval_seconds", 0), "refresh_interval_seconds"),
        (lambda c: setattr(c.bridge, "chain", "SOLANA"), "Unknown bridge chain"),
        (lambda c: setattr(c.logging, "level", "LOUD"), "log level"),
    ])
    def test_rejects(self, mutate, message):
        cfg = PerpXConfig()
        mutate(cfg)
        with pytest.raises(ConfigurationError, match=message):
            cfg.validate()
