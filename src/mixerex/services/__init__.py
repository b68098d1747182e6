"""Mixer services: order lifecycle, deposit detection, payouts and expiry."""

from mixerex.services.deposit_monitor import DepositMonitor, DepositResult
from mixerex.services.expiry_sweeper import ExpirySweeper
from mixerex.services.order_manager import OrderManager, OrderSummary
from mixerex.services.payouts import PayoutExecutor, PayoutResult, PayoutScheduler
from mixerex.services.registry import MixerServices, build_services, get_services

__all__ = [
    "DepositMonitor",
    "DepositResult",
    "ExpirySweeper",
    "MixerServices",
    "OrderManager",
    "OrderSummary",
    "PayoutExecutor",
    "PayoutResult",
    "PayoutScheduler",
    "build_services",
    "get_services",
]
