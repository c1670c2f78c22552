"""Shared data types for llm-relay."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any, Sequence

ROLES = ("system", "user", "assistant", "tool")


class ErrorCategory(str, enum.Enum):
    """Failure categories used for retry decisions."""

    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    UNKNOWN = "unknown"
    # Failures while consuming an already-open stream.  Never produced by
    # the classifier; assigned by the request wrapper.
    STREAM = "stream"


# ---------------------------------------------------------------------------
# Tool call types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolCall:
    """A fully assembled tool call requested by the model.

    ``arguments`` is the raw JSON string exactly as the backend streamed it.
    """

    id: str
    function_name: str
    arguments: str
    type: str = "function"

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode ``arguments``.  An empty string decodes to ``{}``."""
        if not self.arguments.strip():
            return {}
        try:
            value = json.loads(self.arguments)
        except json.JSONDecodeError as e:
            raise ValueError(
                f"Tool call {self.id} has malformed arguments: {e}"
            ) from e
        if not isinstance(value, dict):
            raise ValueError(
                f"Tool call {self.id} arguments must be a JSON object"
            )
        return value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.function_name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class ToolCallDelta:
    """A fragment of a tool call, keyed by its slot ``position``.

    Backends multiplex several concurrent tool calls in one stream; every
    fragment for the same call shares the same position.
    """

    position: int
    id: str | None = None
    function_name: str | None = None
    arguments: str | None = None


# ---------------------------------------------------------------------------
# Stream types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TokenUsage:
    prompt: int | None = None
    completion: int | None = None
    total: int | None = None


@dataclass(frozen=True)
class StreamChunk:
    """One provider-agnostic increment of a streaming answer.

    *text* carries a new text fragment.
    *tool_call_deltas* carries partial tool-call fragments.
    *finish_reason*, *model* and *usage* are set by backends that report
    them mid-stream; the assembler ignores them.
    """

    text: str | None = None
    tool_call_deltas: tuple[ToolCallDelta, ...] = ()
    finish_reason: str | None = None
    model: str | None = None
    usage: TokenUsage | None = None

    @property
    def is_empty(self) -> bool:
        return (
            not self.text
            and not self.tool_call_deltas
            and self.finish_reason is None
            and self.model is None
            and self.usage is None
        )


@dataclass(frozen=True)
class ResponseMetadata:
    """Optional response details.  Availability depends on the backend."""

    model: str | None = None
    finish_reason: str | None = None
    usage: TokenUsage | None = None


@dataclass(frozen=True)
class AssembledResponse:
    """The complete assistant turn after consuming a whole stream."""

    text: str
    tool_calls: tuple[ToolCall, ...] = ()
    metadata: ResponseMetadata | None = None

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


# ---------------------------------------------------------------------------
# Chat messages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChatMessage:
    """A single message in a conversation transcript."""

    role: str  # "system", "user", "assistant", "tool"
    content: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Render the OpenAI chat-completions wire shape."""
        data: dict[str, Any] = {"role": self.role}
        if self.content is not None:
            data["content"] = self.content
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            data["name"] = self.name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        tool_calls = tuple(
            ToolCall(
                id=tc.get("id", ""),
                function_name=tc.get("function", {}).get("name", ""),
                arguments=tc.get("function", {}).get("arguments", ""),
            )
            for tc in data.get("tool_calls") or []
        )
        return cls(
            role=data.get("role", ""),
            content=data.get("content"),
            tool_calls=tool_calls,
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
        )


@dataclass
class TranscriptIssue:
    index: int
    reason: str


def transcript_issues(messages: Sequence[ChatMessage]) -> list[TranscriptIssue]:
    """Return every structural problem found in *messages*."""
    issues: list[TranscriptIssue] = []
    if not messages:
        issues.append(TranscriptIssue(-1, "transcript is empty"))
        return issues
    for i, msg in enumerate(messages):
        if msg.role not in ROLES:
            issues.append(TranscriptIssue(i, f"invalid role {msg.role!r}"))
        elif msg.role == "tool":
            if not msg.tool_call_id:
                issues.append(TranscriptIssue(i, "tool message needs tool_call_id"))
            if msg.content is None:
                issues.append(TranscriptIssue(i, "tool message needs content"))
        elif msg.role == "assistant":
            if msg.content is None and not msg.tool_calls:
                issues.append(
                    TranscriptIssue(i, "assistant message needs content or tool_calls"),
                )
        elif msg.content is None:
            issues.append(TranscriptIssue(i, f"{msg.role} message needs content"))
    return issues


def validate_transcript(messages: Sequence[ChatMessage]) -> None:
    """Raise ``ValueError`` describing the first transcript problem."""
    issues = transcript_issues(messages)
    if issues:
        first = issues[0]
        where = "" if first.index < 0 else f"message {first.index}: "
        raise ValueError(f"Invalid transcript: {where}{first.reason}")


@dataclass
class ToolSpec:
    """An OpenAI-style function tool definition."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}},
    )

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
