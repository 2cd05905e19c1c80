"""Event bus exports."""

from .bus import EventBus

__all__ = ["EventBus"]
