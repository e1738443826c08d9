"""
Pydantic schemas for the trading arena.
"""
from enum import Enum
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field, ValidationError, field_validator
import uuid

from .config import BrokerKind, RiskTolerance


class TradeAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    SELL_SHORT = "SELL_SHORT"
    BUY_TO_COVER = "BUY_TO_COVER"
    HOLD = "HOLD"


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class OrderStatus(str, Enum):
    FILLED = "filled"
    PENDING = "pending"
    REJECTED = "rejected"


class ExitType(str, Enum):
    STOP_LOSS = "stop_loss"
    PROFIT_TARGET = "profit_target"
    TRAILING_STOP = "trailing_stop"
    TIME_BASED = "time_based"
    TECHNICAL = "technical"
    MACRO = "macro"
    STRATEGY_SPECIFIC = "strategy_specific"
    NONE = "none"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


def _new_id() -> str:
    return str(uuid.uuid4())


class Agent(BaseModel):
    """A competing trading agent and its cash/equity ledger."""
    id: str = Field(default_factory=_new_id)
    name: str
    model: str = ""
    cash_balance: float
    account_value: float
    starting_value: float = 10000.0
    broker: BrokerKind = BrokerKind.SIMULATION
    risk_tolerance: Optional[RiskTolerance] = None

    class Config:
        use_enum_values = True
        validate_default = True


class Position(BaseModel):
    """Open LONG or SHORT holding for one agent and symbol."""
    id: str = Field(default_factory=_new_id)
    agent_id: str
    symbol: str
    name: str = ""
    side: PositionSide = PositionSide.LONG
    quantity: float = Field(gt=0)
    entry_price: float
    current_price: float
    unrealized_pnl: float = 0.0
    unrealized_pnl_percent: float = 0.0
    peak_price: Optional[float] = Field(default=None, description="Best price since entry: the high for LONG, the low for SHORT")
    opened_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        use_enum_values = True
        validate_default = True

    @property
    def market_value(self) -> float:
        return self.quantity * self.current_price

    def days_held(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        return max(0, (now - self.opened_at).days)

    def mark_to_market(self, price: float) -> None:
        """Update current price, best price and unrealized P&L (inverted for shorts)."""
        self.current_price = price
        if self.side == PositionSide.SHORT:
            self.peak_price = min(self.peak_price or self.entry_price, price)
            self.unrealized_pnl = (self.entry_price - price) * self.quantity
            self.unrealized_pnl_percent = (self.entry_price - price) / self.entry_price * 100
        else:
            self.peak_price = max(self.peak_price or self.entry_price, price)
            self.unrealized_pnl = (price - self.entry_price) * self.quantity
            self.unrealized_pnl_percent = (price - self.entry_price) / self.entry_price * 100


class PositionStats(BaseModel):
    """Derived display metrics for a position."""
    symbol: str
    market_value: float
    cost_basis: float
    days_held: int
    fees: float = 0.0
    trade_count: int = 0
    avg_trade_size: float = 0.0
    weight_percent: float = 0.0

    @classmethod
    def from_position(
        cls,
        position: Position,
        trades: Optional[List["Trade"]] = None,
        account_value: float = 0.0,
        now: Optional[datetime] = None,
    ) -> "PositionStats":
        related = [t for t in (trades or []) if t.symbol == position.symbol]
        fees = sum(t.commission for t in related)
        avg_size = sum(t.total for t in related) / len(related) if related else 0.0
        market_value = position.market_value
        return cls(
            symbol=position.symbol,
            market_value=market_value,
            cost_basis=position.quantity * position.entry_price,
            days_held=position.days_held(now),
            fees=fees,
            trade_count=len(related),
            avg_trade_size=avg_size,
            weight_percent=(market_value / account_value * 100) if account_value > 0 else 0.0,
        )


class Decision(BaseModel):
    """Externally produced trading decision. Untrusted until validated."""
    action: TradeAction = TradeAction.HOLD
    symbol: Optional[str] = None
    quantity: Optional[float] = Field(default=None, ge=0)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str = ""
    risk_assessment: Optional[str] = None
    target_price: Optional[float] = None
    stop_loss: Optional[float] = None
    invalidation_condition: Optional[str] = None

    class Config:
        use_enum_values = True
        validate_default = True

    @field_validator("symbol")
    @classmethod
    def uppercase_symbol(cls, v: Optional[str]) -> Optional[str]:
        return v.upper().strip() if v else v


def parse_decision(raw: Any) -> Decision:
    """Parse raw provider output into a Decision, falling back to HOLD."""
    if isinstance(raw, Decision):
        return raw
    try:
        if not isinstance(raw, dict):
            raise TypeError(f"expected a mapping, got {type(raw).__name__}")
        data = dict(raw)
        if isinstance(data.get("action"), str):
            data["action"] = data["action"].upper()
        return Decision.model_validate(data)
    except (ValidationError, TypeError) as e:
        return Decision(
            action=TradeAction.HOLD,
            reasoning=f"Failed to parse decision: {str(e)}",
            confidence=0.0,
        )


class ExecutionResult(BaseModel):
    """Outcome of a single broker order. Immutable once created."""
    success: bool
    executed_price: float = 0.0
    executed_quantity: float = 0.0
    requested_quantity: float = 0.0
    commission: float = Field(default=0.0, ge=0)
    slippage: float = 0.0
    execution_time_ms: float = 0.0
    order_id: Optional[str] = None
    order_status: OrderStatus = OrderStatus.REJECTED
    error: Optional[str] = None
    broker: str = ""

    class Config:
        use_enum_values = True
        validate_default = True
        frozen = True

    @classmethod
    def failed(
        cls,
        error: str,
        requested_quantity: float = 0.0,
        broker: str = "",
        order_status: OrderStatus = OrderStatus.REJECTED,
        order_id: Optional[str] = None,
        execution_time_ms: float = 0.0,
    ) -> "ExecutionResult":
        return cls(
            success=False,
            requested_quantity=requested_quantity,
            order_status=order_status,
            order_id=order_id,
            error=error,
            broker=broker,
            execution_time_ms=execution_time_ms,
        )

    @property
    def is_pending(self) -> bool:
        return self.order_status == OrderStatus.PENDING


class Trade(BaseModel):
    """Append-only ledger entry."""
    id: str = Field(default_factory=_new_id)
    agent_id: str
    action: TradeAction
    symbol: str
    quantity: float
    price: float
    total: float
    commission: float = 0.0
    realized_pnl: Optional[float] = None
    reasoning: str = ""
    confidence: Optional[float] = None
    exit_reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        use_enum_values = True
        validate_default = True
        frozen = True


class ExitSignal(BaseModel):
    """Exit verdict for one position, recomputed each cycle."""
    symbol: str
    should_exit: bool = False
    exit_type: ExitType = ExitType.NONE
    urgency: Urgency = Urgency.LOW
    confidence: float = 0.0
    reasoning: List[str] = Field(default_factory=list)

    class Config:
        use_enum_values = True
        validate_default = True


class PositionSizeResult(BaseModel):
    position_size: float
    position_percent: float
    kelly_fraction: float
    adjusted_kelly: float
    reasoning: List[str] = Field(default_factory=list)
    confidence: float

    @property
    def is_no_trade(self) -> bool:
        return self.position_size == 0


class AgentPerformance(BaseModel):
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_pnl: float = 0.0
    avg_win_percent: float = 0.0
    avg_loss_percent: float = 0.0
    win_rate: float = 0.0
    sharpe_ratio: float = 0.0


class AgentStats(BaseModel):
    """Win/loss summary over an agent's recent trades."""
    win_rate: float = 0.0
    total_trades: int = 0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0


class SafetyCheck(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    severity: Severity = Severity.INFO
    halt_system: bool = False

    class Config:
        use_enum_values = True
        validate_default = True


class StockQuote(BaseModel):
    """Quote plus technicals derived from price history."""
    symbol: str
    name: str = ""
    price: float
    change: float = 0.0
    change_percent: float = 0.0
    volume: float = 0.0
    week_trend: Optional[float] = None
    month_trend: Optional[float] = None
    ma7: Optional[float] = None
    ma30: Optional[float] = None
    ma90: Optional[float] = None
    high52w: Optional[float] = None
    low52w: Optional[float] = None
    avg_volume: Optional[float] = None
    volume_trend: Optional[float] = None
    rsi: Optional[float] = None
    volatility: Optional[float] = None
    relative_strength: Optional[float] = None


class SpyTrend(BaseModel):
    price: float = 500.0
    daily_change: float = 0.0
    ma7: float = 500.0
    ma30: float = 500.0
    ma90: float = 500.0
    week_change: float = 0.0
    month_change: float = 0.0
    regime: str = "neutral"


class VixReading(BaseModel):
    level: float = 15.0
    interpretation: str = "normal"
    sentiment: str = "risk_on"


class SectorPerformance(BaseModel):
    sector: str
    avg_change: float = 0.0
    week_trend: float = 0.0
    month_trend: float = 0.0
    relative_strength: float = 0.0
    status: str = "inline"


class MarketContext(BaseModel):
    spy_trend: SpyTrend = Field(default_factory=SpyTrend)
    vix: VixReading = Field(default_factory=VixReading)
    sector_rotation: List[SectorPerformance] = Field(default_factory=list)
    leading_sector: Optional[str] = None
    lagging_sector: Optional[str] = None
    summary: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @property
    def regime(self) -> str:
        return self.spy_trend.regime


class DecisionRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    agent_id: str
    decision: Decision
    portfolio_value: float
    cash_balance: float
    market_snapshot: List[Dict[str, Any]] = Field(default_factory=list)
    execution: Optional[ExecutionResult] = None
    vetoed_reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class PerformanceSnapshot(BaseModel):
    agent_id: str
    account_value: float
    cash_balance: float
    position_count: int = 0
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class BrokerPosition(BaseModel):
    symbol: str
    quantity: float
    avg_entry_price: float = 0.0
    market_value: float = 0.0


class AccountSnapshot(BaseModel):
    account_value: float
    cash_balance: float
    positions: List[BrokerPosition] = Field(default_factory=list)


class AgentContext(BaseModel):
    """Everything a decision provider sees for one agent in one cycle."""
    agent: Agent
    stocks: List[StockQuote] = Field(default_factory=list)
    market_context: MarketContext = Field(default_factory=MarketContext)
    positions: List[Position] = Field(default_factory=list)
    exit_signals: List[ExitSignal] = Field(default_factory=list)
    exit_summary: str = ""
    performance: AgentPerformance = Field(default_factory=AgentPerformance)


class CycleResult(BaseModel):
    """Audit trail of one trading cycle."""
    cycle_id: str = Field(default_factory=_new_id)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    duration_ms: float = 0.0
    agents_processed: int = 0
    agents_skipped: List[str] = Field(default_factory=list)
    trades_executed: int = 0
    forced_exits: int = 0
    vetoes: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    halted: bool = False
    halt_reason: Optional[str] = None
    market_summary: str = ""


