"""
Brokerage adapters behind a single execution contract.
"""
from .base import Broker
from .fulfillment import OrderState, OrderUpdate, RetryPolicy, fulfill_order
from .simulation import ExecutionSimulator, SimulationBroker
from .factory import BrokerFactory, get_broker_display_name, get_available_brokers

__all__ = [
    "Broker",
    "OrderState",
    "OrderUpdate",
    "RetryPolicy",
    "fulfill_order",
    "ExecutionSimulator",
    "SimulationBroker",
    "BrokerFactory",
    "get_broker_display_name",
    "get_available_brokers",
]
