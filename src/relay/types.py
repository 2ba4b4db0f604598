from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict
from typing_extensions import NotRequired, TypedDict


class Usage(TypedDict):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class CompletionMessage(TypedDict):
    role: Literal["assistant"]
    content: Optional[str]
    refusal: Optional[str]


class CompletionChoice(TypedDict):
    index: int
    finish_reason: Optional[str]
    message: CompletionMessage
    logprobs: None


class CompletionObject(TypedDict):
    id: str
    object: Literal["chat.completion"]
    created: int
    model: str
    choices: List[CompletionChoice]
    usage: Usage


class ChunkDelta(TypedDict, total=False):
    role: str
    content: str
    tool_calls: List[Dict[str, Any]]


class ChunkChoice(TypedDict):
    index: int
    delta: ChunkDelta
    finish_reason: Optional[str]
    logprobs: None


class ChunkObject(TypedDict):
    id: str
    object: Literal["chat.completion.chunk"]
    created: int
    model: str
    choices: List[ChunkChoice]
    usage: NotRequired[Usage]


class RequestBody(BaseModel):
    """Inbound chat request. Only ``stream`` is interpreted; the rest passes through."""

    model_config = ConfigDict(extra="allow")

    stream: Any = None

    @property
    def is_stream(self) -> bool:
        return self.stream is True

    def upstream_payload(self, *, stream: bool) -> dict[str, Any]:
        payload = self.model_dump(mode="python")
        payload["stream"] = stream
        return payload
