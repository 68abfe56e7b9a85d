from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_serializer, model_validator

from switchboard.streaming import ToolCall


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    mime_type: str = "image/png"
    base64: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


class DocumentPart(BaseModel):
    type: Literal["document"] = "document"
    name: str
    mime_type: str = "application/pdf"
    base64: str


class ToolResultPart(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    name: str = ""
    text: str
    is_error: bool = False


ContentPart = Annotated[
    Union[TextPart, ImagePart, DocumentPart, ToolResultPart],
    Field(discriminator="type"),
]


class ChatTurn(BaseModel):
    """One turn of the conversation handed to the orchestrator.

    ``content`` is either plain text or a list of typed parts.  Tool
    results only live in ``tool`` turns, and only ``assistant`` turns
    carry the tool calls they requested.
    """

    role: MessageRole
    content: str | list[ContentPart] = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)

    @field_serializer("role")
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @model_validator(mode="after")
    def _check_part_placement(self) -> ChatTurn:
        if self.role is not MessageRole.TOOL and any(
            isinstance(p, ToolResultPart) for p in self.parts
        ):
            raise ValueError("tool results are only allowed in tool turns")
        if self.tool_calls and self.role is not MessageRole.ASSISTANT:
            raise ValueError("only assistant turns may carry tool calls")
        return self

    @property
    def parts(self) -> list:
        """Content normalised to a list of parts."""
        if isinstance(self.content, str):
            return [TextPart(text=self.content)] if self.content else []
        return list(self.content)

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    def is_empty(self) -> bool:
        return not self.parts and not self.tool_calls


def system(content: str) -> ChatTurn:
    return ChatTurn(role=MessageRole.SYSTEM, content=content)


def user(content: str | list) -> ChatTurn:
    return ChatTurn(role=MessageRole.USER, content=content)


def assistant(content: str = "", tool_calls: list[ToolCall] | None = None) -> ChatTurn:
    return ChatTurn(
        role=MessageRole.ASSISTANT, content=content, tool_calls=tool_calls or [],
    )


def tool_results(calls: list[ToolCall]) -> ChatTurn:
    """Build the tool turn answering every call in *calls*, keyed by id."""
    return ChatTurn(
        role=MessageRole.TOOL,
        content=[
            ToolResultPart(
                tool_call_id=c.id,
                name=c.name,
                text=(c.error if c.error is not None else c.result) or "",
                is_error=c.error is not None,
            )
            for c in calls
        ],
    )
