"""Provider-normalizing chat orchestration with streaming and tool calling."""

from switchboard.descriptor import PROVIDERS, ProviderDescriptor, get_descriptor
from switchboard.errors import (
    InvalidCredential,
    RequestCancelled,
    RoundLimitExceeded,
    SwitchboardError,
    TransportError,
)
from switchboard.instrumentation import instrument, uninstrument
from switchboard.message import ChatTurn, MessageRole
from switchboard.normalizer import OrchestrationResult
from switchboard.runner import Runner, orchestrate
from switchboard.settings import Settings
from switchboard.streaming import ToolCall
from switchboard.tools import FunctionToolRegistry, Tool, ToolRegistry, ToolSpec, tool
from switchboard.transport import CancellationToken

__all__ = [
    "CancellationToken",
    "ChatTurn",
    "FunctionToolRegistry",
    "InvalidCredential",
    "MessageRole",
    "OrchestrationResult",
    "PROVIDERS",
    "ProviderDescriptor",
    "RequestCancelled",
    "RoundLimitExceeded",
    "Runner",
    "Settings",
    "SwitchboardError",
    "Tool",
    "ToolCall",
    "ToolRegistry",
    "ToolSpec",
    "TransportError",
    "get_descriptor",
    "instrument",
    "orchestrate",
    "tool",
    "uninstrument",
]
