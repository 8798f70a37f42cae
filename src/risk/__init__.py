"""Risk management module."""

from src.risk.engine import RiskGate
from src.risk.sizing import OrderSizer

__all__ = ["RiskGate", "OrderSizer"]
