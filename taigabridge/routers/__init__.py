"""API routers."""

from taigabridge.routers import health, telegram

__all__ = [
    "health",
    "telegram",
]
