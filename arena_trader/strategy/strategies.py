"""
Per-agent trading strategy table.

Each agent model trades one strategy with its own risk tolerance; the exit
engine keys profit targets and holding periods off the strategy type.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from ..config import RiskTolerance
from ..schemas import Agent


class StrategyType(str, Enum):
    MOMENTUM_BREAKOUT = "momentum_breakout"
    MEAN_REVERSION = "mean_reversion"
    TREND_FOLLOWING = "trend_following"
    VALUE_QUALITY = "value_quality"
    VOLATILITY_ARBITRAGE = "volatility_arbitrage"
    CONTRARIAN_SENTIMENT = "contrarian_sentiment"


@dataclass(frozen=True)
class StrategyConfig:
    name: str
    type: StrategyType
    description: str
    holding_period: str
    risk_tolerance: RiskTolerance
    exit_signals: List[str] = field(default_factory=list)


STRATEGY_CONFIGS: Dict[str, StrategyConfig] = {
    "gpt-4o-mini": StrategyConfig(
        name="Momentum Breakout",
        type=StrategyType.MOMENTUM_BREAKOUT,
        description="Capitalize on explosive price moves with volume confirmation",
        holding_period="1-3 days",
        risk_tolerance=RiskTolerance.AGGRESSIVE,
        exit_signals=["Price closes below 7-day MA", "RSI enters overbought (> 75)", "Quick 5-7% profit target hit"],
    ),
    "claude-haiku": StrategyConfig(
        name="Mean Reversion",
        type=StrategyType.MEAN_REVERSION,
        description="Buy oversold quality names, sell when they normalize",
        holding_period="3-7 days",
        risk_tolerance=RiskTolerance.MODERATE,
        exit_signals=["RSI returns to 50-60 (normalized)", "3-5% profit target achieved"],
    ),
    "gemini-flash": StrategyConfig(
        name="Trend Following",
        type=StrategyType.TREND_FOLLOWING,
        description="Ride strong multi-week trends until they break",
        holding_period="1-4 weeks",
        risk_tolerance=RiskTolerance.MODERATE,
        exit_signals=["Price closes below MA30 (trend break)", "Relative strength turns negative"],
    ),
    "deepseek": StrategyConfig(
        name="Value Quality",
        type=StrategyType.VALUE_QUALITY,
        description="Patient capital allocation to undervalued quality names",
        holding_period="2-8 weeks",
        risk_tolerance=RiskTolerance.CONSERVATIVE,
        exit_signals=["Price recovers to prior highs", "12-20% profit target achieved"],
    ),
    "qwen": StrategyConfig(
        name="Volatility Arbitrage",
        type=StrategyType.VOLATILITY_ARBITRAGE,
        description="Exploit volatility spikes and contractions",
        holding_period="1-2 days",
        risk_tolerance=RiskTolerance.AGGRESSIVE,
        exit_signals=["VIX normalizes < 18", "Quick 3-5% bounce captured"],
    ),
    "grok": StrategyConfig(
        name="Contrarian Sentiment",
        type=StrategyType.CONTRARIAN_SENTIMENT,
        description="Fade extreme sentiment, buy fear, sell greed",
        holding_period="1-2 weeks",
        risk_tolerance=RiskTolerance.MODERATE,
        exit_signals=["Sentiment normalizes", "7-12% profit target or 2 weeks elapsed"],
    ),
}

DEFAULT_STRATEGY = StrategyType.MOMENTUM_BREAKOUT
DEFAULT_RISK_TOLERANCE = RiskTolerance.MODERATE


def get_strategy_config(model: Optional[str]) -> Optional[StrategyConfig]:
    return STRATEGY_CONFIGS.get((model or "").lower())


def strategy_for_agent(agent: Agent) -> StrategyType:
    config = get_strategy_config(agent.model)
    return config.type if config else DEFAULT_STRATEGY


def risk_tolerance_for_agent(agent: Agent) -> RiskTolerance:
    """Explicit agent setting first, then the strategy table, then moderate."""
    if agent.risk_tolerance:
        return RiskTolerance(agent.risk_tolerance)
    config = get_strategy_config(agent.model)
    return config.risk_tolerance if config else DEFAULT_RISK_TOLERANCE
