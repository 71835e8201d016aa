"""Order lifecycle monitoring."""

from htlc_resolver.monitoring.order_monitor import OrderMonitor
from htlc_resolver.monitoring.registry import OrderRegistry

__all__ = ["OrderMonitor", "OrderRegistry"]
