"""Diagnostics for weighted trial emulation."""

from .weights import WeightSummary, summarize_weights

__all__ = ["WeightSummary", "summarize_weights"]
