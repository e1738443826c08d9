"""
Strategy table and position sizing.
"""
from .strategies import (
    StrategyType,
    StrategyConfig,
    STRATEGY_CONFIGS,
    get_strategy_config,
    strategy_for_agent,
    risk_tolerance_for_agent,
)
from .position_sizing import (
    PositionSizeInput,
    calculate_position_size,
    adjust_for_market_conditions,
    calculate_agent_performance,
    calculate_agent_stats,
    get_position_size_summary,
)

__all__ = [
    "StrategyType",
    "StrategyConfig",
    "STRATEGY_CONFIGS",
    "get_strategy_config",
    "strategy_for_agent",
    "risk_tolerance_for_agent",
    "PositionSizeInput",
    "calculate_position_size",
    "adjust_for_market_conditions",
    "calculate_agent_performance",
    "calculate_agent_stats",
    "get_position_size_summary",
]
