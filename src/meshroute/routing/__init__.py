"""Meshroute Routing: UCB backend selection fed by observed call outcomes."""

from meshroute.routing.router import (
    AdaptiveRouter,
    confidence_tier,
)

__all__ = [
    "AdaptiveRouter",
    "confidence_tier",
]
