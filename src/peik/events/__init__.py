"""Event emitter for Peik."""

from peik.events.bus import EventEmitter

__all__ = ["EventEmitter"]
