"""Routers package."""

from . import (
    health,
    identify,
    usage,
    billing,
    engagement,
)
