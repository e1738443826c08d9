"""
arena_trader - trade decision and execution core for a multi-agent trading arena.

Components (in cycle order):
1. Market data + context - quotes, technicals, SPY/VIX regime
2. Exit engine - flags positions that must be closed
3. Decision provider - proposes one action per agent
4. Position sizing - Kelly-based dollar size for BUYs
5. Safety engine - ordered veto pipeline and system halts
6. Brokers - simulator or live adapters behind one port

The TradingOrchestrator coordinates the cycle.
"""

from .config import TradingConfig, TradingMode, BrokerKind, load_config
from .orchestrator import TradingOrchestrator
from .safety import SafetyEngine
from .store import InMemoryStore
from .market_data import InMemoryMarketData

__version__ = "0.1.0"

__all__ = [
    "TradingConfig",
    "TradingMode",
    "BrokerKind",
    "load_config",
    "TradingOrchestrator",
    "SafetyEngine",
    "InMemoryStore",
    "InMemoryMarketData",
]
