"""ABEngine Multi-Armed Bandit Subsystem."""

from .thompson import BanditOptimizer, apply_floor, rank_weights

__all__ = [
    "BanditOptimizer",
    "apply_floor",
    "rank_weights",
]
