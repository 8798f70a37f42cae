"""Inbound signal normalization."""

from src.strategy.signals import FIELD_ALIASES, SignalNormalizer

__all__ = ["SignalNormalizer", "FIELD_ALIASES"]
