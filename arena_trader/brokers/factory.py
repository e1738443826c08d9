"""
Broker factory: builds and caches one adapter per broker kind.
"""
import logging
from typing import Dict, List, Optional, Tuple

from ..config import BrokerKind, TradingConfig
from ..market_data import MarketDataProvider
from ..tracking import ApiCallTracker
from .alpaca import AlpacaBroker
from .base import Broker
from .fulfillment import RetryPolicy
from .ibkr import InteractiveBrokersBroker
from .schwab import SchwabBroker
from .simulation import ExecutionSimulator, SimulationBroker
from .tradier import TradierBroker
from .webull import WebullBroker

logger = logging.getLogger("arena_trader.brokers.factory")

BROKER_DISPLAY_NAMES = {
    BrokerKind.ALPACA: "Alpaca Markets",
    BrokerKind.TRADIER: "Tradier",
    BrokerKind.WEBULL: "Webull",
    BrokerKind.SCHWAB: "Charles Schwab",
    BrokerKind.INTERACTIVE_BROKERS: "Interactive Brokers",
    BrokerKind.SIMULATION: "Simulation",
}

# Agents with a dedicated Alpaca paper account
ALPACA_AGENT_SLOTS = {
    "GPT-4o Mini": 2,
    "Claude Haiku": 3,
}


def get_broker_display_name(kind) -> str:
    try:
        return BROKER_DISPLAY_NAMES[BrokerKind(kind)]
    except ValueError:
        return str(kind)


def get_available_brokers() -> List[BrokerKind]:
    return list(BROKER_DISPLAY_NAMES)


def alpaca_slot_for_agent(agent_name: Optional[str]) -> int:
    return ALPACA_AGENT_SLOTS.get(agent_name or "", 1)


class BrokerFactory:
    """Creates brokers from configuration, falling back to simulation."""

    def __init__(
        self,
        config: TradingConfig,
        market_data: MarketDataProvider,
        tracker: Optional[ApiCallTracker] = None,
        simulator: Optional[ExecutionSimulator] = None,
    ):
        self.config = config
        self.market_data = market_data
        self.tracker = tracker
        self.simulator = simulator
        self.policy = RetryPolicy(
            max_attempts=config.poll_max_attempts,
            interval_sec=config.poll_interval_sec,
        )
        self._cache: Dict[Tuple[BrokerKind, int], Broker] = {}

    def get_broker(self, kind, agent_name: Optional[str] = None) -> Broker:
        """Get the broker for a kind; Alpaca is cached per agent credential slot."""
        try:
            kind = BrokerKind(kind)
        except ValueError:
            logger.warning(f"Unknown broker type '{kind}', falling back to simulation")
            kind = BrokerKind.SIMULATION

        slot = alpaca_slot_for_agent(agent_name) if kind == BrokerKind.ALPACA else 0
        key = (kind, slot)
        if key in self._cache:
            return self._cache[key]

        try:
            broker = self._create(kind, slot)
        except ValueError as e:
            logger.warning(
                f"{get_broker_display_name(kind)} unavailable ({e}), falling back to simulation"
            )
            broker = self._simulation()
        self._cache[key] = broker
        logger.info(f"Broker for {agent_name or kind.value}: {broker.name}")
        return broker

    def _common(self) -> dict:
        return {"policy": self.policy, "tracker": self.tracker}

    def _simulation(self) -> Broker:
        key = (BrokerKind.SIMULATION, 0)
        if key not in self._cache:
            simulator = self.simulator or ExecutionSimulator(self.config)
            self._cache[key] = SimulationBroker(simulator, self.market_data, **self._common())
        return self._cache[key]

    def _create(self, kind: BrokerKind, slot: int) -> Broker:
        cfg = self.config
        if kind == BrokerKind.SIMULATION:
            return self._simulation()
        if kind == BrokerKind.ALPACA:
            api_key, secret_key = cfg.alpaca_credentials(slot)
            return AlpacaBroker(api_key, secret_key, paper=cfg.alpaca_paper, **self._common())
        if kind == BrokerKind.TRADIER:
            return TradierBroker(
                cfg.tradier_access_token, cfg.tradier_account_id, sandbox=cfg.tradier_sandbox, **self._common()
            )
        if kind == BrokerKind.SCHWAB:
            return SchwabBroker(
                cfg.schwab_client_id,
                cfg.schwab_client_secret,
                cfg.schwab_account_id,
                cfg.schwab_refresh_token,
                **self._common(),
            )
        if kind == BrokerKind.INTERACTIVE_BROKERS:
            return InteractiveBrokersBroker(cfg.ibkr_account_id, gateway_url=cfg.ibkr_gateway_url, **self._common())
        if kind == BrokerKind.WEBULL:
            return WebullBroker(cfg.webull_app_key, cfg.webull_app_secret, cfg.webull_account_id, **self._common())
        raise ValueError(f"Unknown broker type: {kind}")

    def clear_cache(self) -> None:
        self._cache.clear()

    async def aclose(self) -> None:
        for broker in set(self._cache.values()):
            await broker.aclose()
        self._cache.clear()
