"""Agent packets streamed by the execution service.

Packets are a tagged union on ``type``. The wire names follow the callback
names of the agent runtime behind the service (``handleToolStart`` and so
on), so they are kept verbatim.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# =============================================================================
# ENUMS
# =============================================================================


class PacketType(str, Enum):
    """Every packet type the execution service can emit."""

    TOKEN = "token"
    WORKING = "working"
    LLM_START = "handleLLMStart"
    CHAIN_START = "handleChainStart"
    TOOL_START = "handleToolStart"
    TOOL_END = "handleToolEnd"
    AGENT_ACTION = "handleAgentAction"
    AGENT_END = "handleAgentEnd"
    HUMAN_INPUT = "requestHumanInput"
    DONE = "done"
    ERROR = "error"
    LLM_ERROR = "handleLLMError"
    CHAIN_ERROR = "handleChainError"
    TOOL_ERROR = "handleToolError"


class Severity(str, Enum):
    """Severity of an error packet."""

    WARN = "warn"
    HUMAN = "human"
    FATAL = "fatal"


class TaskStatus(str, Enum):
    """Status of a task, projected from its last packet."""

    IDLE = "idle"
    STARTING = "starting"
    WORKING = "working"
    DONE = "done"
    WAIT = "wait"
    ERROR = "error"


# =============================================================================
# PACKETS
# =============================================================================


class _Packet(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)


class TokenPacket(_Packet):
    type: Literal["token"] = "token"
    token: str = ""


class WorkingPacket(_Packet):
    type: Literal["working"] = "working"


class LLMStartPacket(_Packet):
    type: Literal["handleLLMStart"] = "handleLLMStart"


class ChainStartPacket(_Packet):
    type: Literal["handleChainStart"] = "handleChainStart"
    chain_name: str | None = Field(default=None, alias="chainName")


class ToolStartPacket(_Packet):
    type: Literal["handleToolStart"] = "handleToolStart"
    tool: str | None = None
    input: str | None = None


class ToolEndPacket(_Packet):
    type: Literal["handleToolEnd"] = "handleToolEnd"
    output: str | None = None


class AgentActionPacket(_Packet):
    type: Literal["handleAgentAction"] = "handleAgentAction"
    action: Any = None


class AgentEndPacket(_Packet):
    type: Literal["handleAgentEnd"] = "handleAgentEnd"
    value: str = ""


class HumanInputPacket(_Packet):
    type: Literal["requestHumanInput"] = "requestHumanInput"
    prompt: str = ""


class DonePacket(_Packet):
    type: Literal["done"] = "done"
    value: str = ""


class ErrorPacket(_Packet):
    type: Literal["error"] = "error"
    severity: Severity = Severity.FATAL
    message: str = ""


class LLMErrorPacket(_Packet):
    type: Literal["handleLLMError"] = "handleLLMError"
    err: Any = None


class ChainErrorPacket(_Packet):
    type: Literal["handleChainError"] = "handleChainError"
    err: Any = None


class ToolErrorPacket(_Packet):
    type: Literal["handleToolError"] = "handleToolError"
    err: Any = None


AgentPacket = Annotated[
    Union[
        TokenPacket,
        WorkingPacket,
        LLMStartPacket,
        ChainStartPacket,
        ToolStartPacket,
        ToolEndPacket,
        AgentActionPacket,
        AgentEndPacket,
        HumanInputPacket,
        DonePacket,
        ErrorPacket,
        LLMErrorPacket,
        ChainErrorPacket,
        ToolErrorPacket,
    ],
    Field(discriminator="type"),
]

_packet_adapter: TypeAdapter[AgentPacket] = TypeAdapter(AgentPacket)


def parse_packet(data: dict[str, Any]) -> AgentPacket:
    """
    Decode one packet from its JSON object.

    Raises:
        pydantic.ValidationError: If the type is unknown or fields are invalid.
    """
    return _packet_adapter.validate_python(data)


def dump_packet(packet: AgentPacket) -> dict[str, Any]:
    """Encode a packet to its JSON object."""
    return packet.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# STATUS PROJECTION
# =============================================================================


_STATUS_BY_TYPE: dict[str, TaskStatus] = {
    PacketType.TOKEN.value: TaskStatus.WORKING,
    PacketType.WORKING.value: TaskStatus.WORKING,
    PacketType.LLM_START.value: TaskStatus.WORKING,
    PacketType.CHAIN_START.value: TaskStatus.WORKING,
    PacketType.TOOL_START.value: TaskStatus.WORKING,
    PacketType.AGENT_ACTION.value: TaskStatus.WORKING,
    PacketType.DONE.value: TaskStatus.DONE,
    PacketType.AGENT_END.value: TaskStatus.DONE,
    PacketType.ERROR.value: TaskStatus.ERROR,
    PacketType.LLM_ERROR.value: TaskStatus.ERROR,
    PacketType.CHAIN_ERROR.value: TaskStatus.ERROR,
    PacketType.TOOL_ERROR.value: TaskStatus.ERROR,
    PacketType.HUMAN_INPUT.value: TaskStatus.WAIT,
}


def status_for_packet_type(packet_type: str | None) -> TaskStatus:
    """Map a packet type to a task status; unknown or missing maps to idle."""
    if packet_type is None:
        return TaskStatus.IDLE
    return _STATUS_BY_TYPE.get(packet_type, TaskStatus.IDLE)


def is_terminal(packet: AgentPacket) -> bool:
    """Only ``done`` and ``error`` end a task's packet stream."""
    return packet.type in (PacketType.DONE.value, PacketType.ERROR.value)


def packet_result(packet: AgentPacket) -> str | None:
    """The value a terminal packet resolves to."""
    if isinstance(packet, DonePacket):
        return packet.value
    if isinstance(packet, ErrorPacket):
        return packet.message
    return None
