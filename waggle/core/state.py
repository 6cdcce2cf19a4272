"""State management types for Waggle runs."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from waggle.execution.packets import (
    AgentPacket,
    TaskStatus,
    dump_packet,
    is_terminal,
    packet_result,
    status_for_packet_type,
)
from waggle.graph.models import DAG, DAGNode

__all__ = ["RunStatus", "TaskState", "TaskStatus", "WaggleDanceResult"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """
    Status of a whole run.

    ``planning`` covers the whole time the plan streams in, including tasks
    that already execute meanwhile; ``running`` starts once the plan is
    complete.
    """

    PENDING = "pending"
    PLANNING = "planning"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_active(self) -> bool:
        """Whether a run in this status has not finished yet."""
        return self in (RunStatus.PENDING, RunStatus.PLANNING, RunStatus.RUNNING)


class TaskState(BaseModel):
    """
    Packet log and derived status of one node.

    ``status`` is never set directly; it is projected from the type of the
    last packet appended.
    """

    model_config = ConfigDict(frozen=False, arbitrary_types_allowed=True)

    node: DAGNode
    packets: list[AgentPacket] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def id(self) -> str:
        return self.node.id

    @property
    def last_packet(self) -> AgentPacket | None:
        return self.packets[-1] if self.packets else None

    @property
    def from_packet_type(self) -> str | None:
        """Type of the packet the current status was projected from."""
        last = self.last_packet
        return last.type if last is not None else None

    @property
    def status(self) -> TaskStatus:
        return status_for_packet_type(self.from_packet_type)

    @property
    def result(self) -> str | None:
        """Value of the most recent terminal packet, if any."""
        for packet in reversed(self.packets):
            if is_terminal(packet):
                return packet_result(packet)
        return None

    def append(self, packet: AgentPacket) -> None:
        """Append a packet; the log is append-only."""
        self.packets.append(packet)
        self.updated_at = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "node": self.node.model_dump(),
            "status": self.status.value,
            "result": self.result,
            "fromPacketType": self.from_packet_type,
            "packets": [dump_packet(packet) for packet in self.packets],
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class WaggleDanceResult:
    """
    Outcome of a run.

    Failed and aborted runs still carry every task result recorded before
    the run ended.
    """

    task_results: dict[str, TaskState] = field(default_factory=dict)
    completed_tasks: set[str] = field(default_factory=set)
    status: RunStatus = RunStatus.COMPLETED
    error: Exception | None = None
    dag: DAG | None = None

    @property
    def is_success(self) -> bool:
        return self.status == RunStatus.COMPLETED and self.error is None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "error": str(self.error) if self.error else None,
            "completedTasks": sorted(self.completed_tasks),
            "taskResults": {
                node_id: state.to_dict() for node_id, state in self.task_results.items()
            },
            "dag": self.dag.to_dict() if self.dag else None,
        }
