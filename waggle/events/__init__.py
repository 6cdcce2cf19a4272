"""Packet routing and result persistence."""

from waggle.events.persistence import ResultStore
from waggle.events.sink import EventSink, PacketEvent

__all__ = ["EventSink", "PacketEvent", "ResultStore"]
