"""Routers package."""

from . import (
    health,
    analysis,
    billing,
)
