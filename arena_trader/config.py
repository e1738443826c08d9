"""
Configuration management with safety latches for the trading arena.
"""
import os
from dataclasses import dataclass, field
from typing import List
from enum import Enum


class TradingMode(str, Enum):
    PAPER = "paper"
    SHADOW = "shadow"
    LIVE = "live"


class BrokerKind(str, Enum):
    SIMULATION = "simulation"
    ALPACA = "alpaca"
    TRADIER = "tradier"
    SCHWAB = "schwab"
    INTERACTIVE_BROKERS = "interactive_brokers"
    WEBULL = "webull"


class RiskTolerance(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


DEFAULT_SYMBOLS = [
    "AAPL", "MSFT", "NVDA", "GOOGL", "META",
    "JPM", "BAC", "V", "MA",
    "XOM", "CVX",
    "UNH", "JNJ", "LLY",
    "WMT", "PG", "KO", "COST",
]


@dataclass
class TradingConfig:
    trading_mode: TradingMode = TradingMode.PAPER
    live_trading_enabled: bool = False

    tradable_symbols: List[str] = field(default_factory=lambda: list(DEFAULT_SYMBOLS))

    market_timezone: str = "America/New_York"
    market_open: str = "09:25"
    market_close: str = "16:00"

    large_cap_spread_bps: float = 1.0
    small_cap_spread_bps: float = 3.0
    partial_fill_threshold: float = 50000.0
    latency_min_ms: float = 100.0
    latency_max_ms: float = 500.0
    commission_per_trade: float = 0.0

    poll_interval_sec: float = 0.5
    poll_max_attempts: int = 20

    max_single_trade_value: float = 5000.0
    max_daily_loss_per_agent: float = 500.0
    max_day_trades: int = 3
    max_account_value_per_agent: float = 10000.0
    account_growth_allowance: float = 1.5
    system_daily_loss_halt: float = 3000.0
    api_error_halt_count: int = 5
    require_manual_approval: bool = False
    pdt_checks_enabled: bool = True

    kelly_min_trades: int = 10
    kelly_floor_pct: float = 0.05
    max_position_percent: float = 30.0
    cold_start_kelly_cap: float = 0.15

    forced_exit_urgencies: List[str] = field(default_factory=lambda: ["critical", "high"])
    parallel_agents: bool = False
    log_dir: str = "arena_trader/logs"

    alpaca_api_key: str = ""
    alpaca_secret_key: str = ""
    alpaca_api_key_2: str = ""
    alpaca_secret_key_2: str = ""
    alpaca_api_key_3: str = ""
    alpaca_secret_key_3: str = ""
    alpaca_paper: bool = True

    tradier_access_token: str = ""
    tradier_account_id: str = ""
    tradier_sandbox: bool = True

    schwab_client_id: str = ""
    schwab_client_secret: str = ""
    schwab_account_id: str = ""
    schwab_refresh_token: str = ""

    ibkr_account_id: str = ""
    ibkr_gateway_url: str = "https://localhost:5000/v1/api"

    webull_app_key: str = ""
    webull_app_secret: str = ""
    webull_account_id: str = ""

    def __post_init__(self):
        self._validate_safety()

    def _validate_safety(self):
        """Ensure safety latches are properly configured."""
        if self.trading_mode == TradingMode.LIVE:
            if not self.live_trading_enabled:
                raise ValueError(
                    "SAFETY: Live trading requested but LIVE_TRADING_ENABLED is not true. "
                    "Both TRADING_MODE=live AND LIVE_TRADING_ENABLED=true are required."
                )
            if self.alpaca_paper or self.tradier_sandbox:
                # Live mode must not silently route to a paper endpoint
                self.alpaca_paper = False
                self.tradier_sandbox = False
        if self.latency_min_ms > self.latency_max_ms:
            raise ValueError(
                f"SAFETY: latency_min_ms ({self.latency_min_ms}) exceeds latency_max_ms ({self.latency_max_ms})"
            )
        if self.poll_max_attempts < 1:
            raise ValueError("SAFETY: poll_max_attempts must be at least 1")
        if not 0 < self.max_position_percent <= 100:
            raise ValueError(
                f"SAFETY: max_position_percent must be within (0, 100], got {self.max_position_percent}"
            )

    def can_execute_orders(self) -> bool:
        """Check if order execution is allowed based on mode and latches."""
        if self.trading_mode == TradingMode.SHADOW:
            return False
        if self.trading_mode == TradingMode.LIVE:
            return self.live_trading_enabled
        return True

    def get_mode_description(self) -> str:
        """Get human-readable description of current mode."""
        if self.trading_mode == TradingMode.PAPER:
            return "PAPER: Orders routed to paper/sandbox brokers or the simulator"
        elif self.trading_mode == TradingMode.SHADOW:
            return "SHADOW: Decisions logged but NO orders placed"
        elif self.trading_mode == TradingMode.LIVE:
            if self.live_trading_enabled:
                return "LIVE: Real money trading ENABLED"
            return "LIVE: Blocked (LIVE_TRADING_ENABLED is false)"
        return "UNKNOWN"

    def alpaca_credentials(self, slot: int) -> tuple[str, str]:
        """Return (key, secret) for an Alpaca credential slot (1-3)."""
        if slot == 2 and self.alpaca_api_key_2:
            return self.alpaca_api_key_2, self.alpaca_secret_key_2
        if slot == 3 and self.alpaca_api_key_3:
            return self.alpaca_api_key_3, self.alpaca_secret_key_3
        return self.alpaca_api_key, self.alpaca_secret_key


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def load_config() -> TradingConfig:
    """Load configuration from environment variables."""
    mode_str = os.getenv("TRADING_MODE", "paper").lower()
    try:
        trading_mode = TradingMode(mode_str)
    except ValueError:
        trading_mode = TradingMode.PAPER

    live_enabled = _env_bool("LIVE_TRADING_ENABLED", "false")

    symbols_str = os.getenv("TRADABLE_SYMBOLS", ",".join(DEFAULT_SYMBOLS))
    tradable_symbols = [s.strip().upper() for s in symbols_str.split(",") if s.strip()]

    urgencies_str = os.getenv("FORCED_EXIT_URGENCIES", "critical,high")
    forced_exit_urgencies = [u.strip().lower() for u in urgencies_str.split(",") if u.strip()]

    return TradingConfig(
        trading_mode=trading_mode,
        live_trading_enabled=live_enabled,
        tradable_symbols=tradable_symbols,
        market_timezone=os.getenv("MARKET_TIMEZONE", "America/New_York"),
        market_open=os.getenv("MARKET_OPEN", "09:25"),
        market_close=os.getenv("MARKET_CLOSE", "16:00"),
        large_cap_spread_bps=float(os.getenv("LARGE_CAP_SPREAD_BPS", "1")),
        small_cap_spread_bps=float(os.getenv("SMALL_CAP_SPREAD_BPS", "3")),
        partial_fill_threshold=float(os.getenv("PARTIAL_FILL_THRESHOLD", "50000")),
        latency_min_ms=float(os.getenv("LATENCY_MIN_MS", "100")),
        latency_max_ms=float(os.getenv("LATENCY_MAX_MS", "500")),
        commission_per_trade=float(os.getenv("COMMISSION_PER_TRADE", "0")),
        poll_interval_sec=float(os.getenv("POLL_INTERVAL_SEC", "0.5")),
        poll_max_attempts=int(os.getenv("POLL_MAX_ATTEMPTS", "20")),
        max_single_trade_value=float(os.getenv("MAX_SINGLE_TRADE_VALUE", "5000")),
        max_daily_loss_per_agent=float(os.getenv("MAX_DAILY_LOSS_PER_AGENT", "500")),
        max_day_trades=int(os.getenv("MAX_DAY_TRADES", "3")),
        max_account_value_per_agent=float(os.getenv("MAX_ACCOUNT_VALUE_PER_AGENT", "10000")),
        account_growth_allowance=float(os.getenv("ACCOUNT_GROWTH_ALLOWANCE", "1.5")),
        system_daily_loss_halt=float(os.getenv("SYSTEM_DAILY_LOSS_HALT", "3000")),
        api_error_halt_count=int(os.getenv("API_ERROR_HALT_COUNT", "5")),
        require_manual_approval=_env_bool("REQUIRE_MANUAL_APPROVAL", "false"),
        pdt_checks_enabled=_env_bool("PDT_CHECKS_ENABLED", "true"),
        kelly_min_trades=int(os.getenv("KELLY_MIN_TRADES", "10")),
        kelly_floor_pct=float(os.getenv("KELLY_FLOOR_PCT", "0.05")),
        max_position_percent=float(os.getenv("MAX_POSITION_PERCENT", "30")),
        cold_start_kelly_cap=float(os.getenv("COLD_START_KELLY_CAP", "0.15")),
        forced_exit_urgencies=forced_exit_urgencies,
        parallel_agents=_env_bool("PARALLEL_AGENTS", "false"),
        log_dir=os.getenv("LOG_DIR", "arena_trader/logs"),
        alpaca_api_key=os.getenv("ALPACA_API_KEY", ""),
        alpaca_secret_key=os.getenv("ALPACA_SECRET_KEY", ""),
        alpaca_api_key_2=os.getenv("ALPACA_API_KEY_2", ""),
        alpaca_secret_key_2=os.getenv("ALPACA_SECRET_KEY_2", ""),
        alpaca_api_key_3=os.getenv("ALPACA_API_KEY_3", ""),
        alpaca_secret_key_3=os.getenv("ALPACA_SECRET_KEY_3", ""),
        alpaca_paper=os.getenv("ALPACA_PAPER_TRADING", "true").lower() != "false",
        tradier_access_token=os.getenv("TRADIER_ACCESS_TOKEN", ""),
        tradier_account_id=os.getenv("TRADIER_ACCOUNT_ID", ""),
        tradier_sandbox=os.getenv("TRADIER_SANDBOX", "true").lower() != "false",
        schwab_client_id=os.getenv("SCHWAB_CLIENT_ID", ""),
        schwab_client_secret=os.getenv("SCHWAB_CLIENT_SECRET", ""),
        schwab_account_id=os.getenv("SCHWAB_ACCOUNT_ID", ""),
        schwab_refresh_token=os.getenv("SCHWAB_REFRESH_TOKEN", ""),
        ibkr_account_id=os.getenv("IBKR_ACCOUNT_ID", ""),
        ibkr_gateway_url=os.getenv("IBKR_GATEWAY_URL", "https://localhost:5000/v1/api"),
        webull_app_key=os.getenv("WEBULL_APP_KEY", ""),
        webull_app_secret=os.getenv("WEBULL_APP_SECRET", ""),
        webull_account_id=os.getenv("WEBULL_ACCOUNT_ID", ""),
    )
