"""Routers package."""

from . import (
    health,
    uploads,
    storage,
    jobs,
    assets,
)
