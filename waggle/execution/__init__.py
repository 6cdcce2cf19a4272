"""Task execution: agent packets, the executor client and the scheduler."""

from waggle.execution.packets import (
    AgentPacket,
    DonePacket,
    ErrorPacket,
    PacketType,
    Severity,
    TaskStatus,
    parse_packet,
    status_for_packet_type,
)

__all__ = [
    "AgentPacket",
    "DonePacket",
    "ErrorPacket",
    "PacketType",
    "Severity",
    "TaskStatus",
    "parse_packet",
    "status_for_packet_type",
]
