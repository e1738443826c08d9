"""
Safety latch and configuration tests.
"""
import os
import pytest
from unittest.mock import patch

from arena_trader.config import BrokerKind, TradingConfig, TradingMode, load_config


class TestSafetyLatches:
    """Test safety latch behavior."""

    def test_paper_mode_allows_execution(self):
        """Paper mode should allow order execution."""
        cfg = TradingConfig(trading_mode=TradingMode.PAPER, live_trading_enabled=False)
        assert cfg.can_execute_orders() is True

    def test_shadow_mode_blocks_execution(self):
        """Shadow mode should never submit orders."""
        cfg = TradingConfig(trading_mode=TradingMode.SHADOW, live_trading_enabled=True)
        assert cfg.can_execute_orders() is False

    def test_live_mode_without_flag_raises(self):
        """Live mode without LIVE_TRADING_ENABLED should raise ValueError."""
        with pytest.raises(ValueError, match="SAFETY"):
            TradingConfig(trading_mode=TradingMode.LIVE, live_trading_enabled=False)

    def test_live_mode_with_flag_allows_execution(self):
        """Live mode with both flags should allow execution."""
        cfg = TradingConfig(trading_mode=TradingMode.LIVE, live_trading_enabled=True)
        assert cfg.can_execute_orders() is True
        assert "Real money" in cfg.get_mode_description()

    def test_live_mode_disables_paper_endpoints(self):
        """Live mode must not route to paper or sandbox endpoints."""
        cfg = TradingConfig(trading_mode=TradingMode.LIVE, live_trading_enabled=True)
        assert cfg.alpaca_paper is False
        assert cfg.tradier_sandbox is False

    def test_inverted_latency_bounds_rejected(self):
        """Latency min above max is a configuration error."""
        with pytest.raises(ValueError, match="latency"):
            TradingConfig(latency_min_ms=600, latency_max_ms=500)

    def test_zero_poll_attempts_rejected(self):
        with pytest.raises(ValueError, match="poll_max_attempts"):
            TradingConfig(poll_max_attempts=0)


class TestLoadConfig:
    """Test environment loading."""

    def test_default_config_is_paper(self):
        """Default configuration should be paper mode with stock limits."""
        with patch.dict(os.environ, {}, clear=True):
            cfg = load_config()
            assert cfg.trading_mode == TradingMode.PAPER
            assert cfg.live_trading_enabled is False
            assert cfg.max_single_trade_value == 5000
            assert cfg.max_daily_loss_per_agent == 500
            assert cfg.system_daily_loss_halt == 3000
            assert cfg.api_error_halt_count == 5
            assert cfg.forced_exit_urgencies == ["critical", "high"]
            assert "AAPL" in cfg.tradable_symbols

    def test_unknown_mode_falls_back_to_paper(self):
        with patch.dict(os.environ, {"TRADING_MODE": "yolo"}, clear=True):
            assert load_config().trading_mode == TradingMode.PAPER

    def test_live_from_env_requires_latch(self):
        """TRADING_MODE=live alone must fail loudly."""
        with patch.dict(os.environ, {"TRADING_MODE": "live"}, clear=True):
            with pytest.raises(ValueError, match="SAFETY"):
                load_config()

    def test_env_overrides(self):
        env = {
            "TRADABLE_SYMBOLS": "aapl, msft ,",
            "MAX_SINGLE_TRADE_VALUE": "2500",
            "PDT_CHECKS_ENABLED": "false",
            "FORCED_EXIT_URGENCIES": "CRITICAL",
            "PARALLEL_AGENTS": "true",
        }
        with patch.dict(os.environ, env, clear=True):
            cfg = load_config()
        assert cfg.tradable_symbols == ["AAPL", "MSFT"]
        assert cfg.max_single_trade_value == 2500
        assert cfg.pdt_checks_enabled is False
        assert cfg.forced_exit_urgencies == ["critical"]
        assert cfg.parallel_agents is True

    def test_alpaca_credential_slots(self):
        cfg = TradingConfig(
            alpaca_api_key="k1",
            alpaca_secret_key="s1",
            alpaca_api_key_2="k2",
            alpaca_secret_key_2="s2",
        )
        assert cfg.alpaca_credentials(1) == ("k1", "s1")
        assert cfg.alpaca_credentials(2) == ("k2", "s2")
        # Slot 3 unset: falls back to the primary keys
        assert cfg.alpaca_credentials(3) == ("k1", "s1")

    def test_broker_kind_values(self):
        assert BrokerKind("interactive_brokers") == BrokerKind.INTERACTIVE_BROKERS
