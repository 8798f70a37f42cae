"""Signal execution."""

from src.execution.orchestrator import TradeOrchestrator

__all__ = ["TradeOrchestrator"]
