"""Allow-list normalizers for upstream completions and stream chunks.

Some providers answer in a near-OpenAI dialect that carries extra diagnostic
fields (``reasoning_content``, ``matched_stop``, provider token breakdowns).
The functions here rebuild each object from the canonical fields only. Values
are copied as-is; only the shape changes.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from .types import ChunkChoice, ChunkDelta, ChunkObject, CompletionChoice, CompletionObject, Usage

CompletionTransform = Callable[[Mapping[str, Any]], Mapping[str, Any]]
ChunkTransform = Callable[[Mapping[str, Any]], Mapping[str, Any]]

USAGE_FIELDS: tuple[str, ...] = ("prompt_tokens", "completion_tokens", "total_tokens")
DELTA_FIELDS: tuple[str, ...] = ("role", "content", "tool_calls")


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _choices(payload: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    raw = payload.get("choices")
    if not isinstance(raw, list):
        return []
    return [choice for choice in raw if isinstance(choice, Mapping)]


def _rebuild_usage(usage: Mapping[str, Any]) -> Usage:
    counters = {field: usage.get(field) for field in USAGE_FIELDS}
    return {
        "prompt_tokens": counters["prompt_tokens"] or 0,
        "completion_tokens": counters["completion_tokens"] or 0,
        "total_tokens": counters["total_tokens"] or 0,
    }


def normalize_completion(completion: Mapping[str, Any]) -> CompletionObject:
    choices: list[CompletionChoice] = []
    for position, choice in enumerate(_choices(completion)):
        message = _as_mapping(choice.get("message"))
        choices.append(
            {
                "index": choice.get("index", position),
                "finish_reason": choice.get("finish_reason"),
                "message": {
                    "role": "assistant",
                    "content": message.get("content"),
                    "refusal": message.get("refusal"),
                },
                "logprobs": None,
            }
        )
    # absent upstream usage still yields an all-zero block
    usage = completion.get("usage")
    return {
        "id": completion.get("id"),
        "object": "chat.completion",
        "created": completion.get("created"),
        "model": completion.get("model"),
        "choices": choices,
        "usage": _rebuild_usage(_as_mapping(usage)),
    }


def _rebuild_delta(delta: Mapping[str, Any]) -> ChunkDelta:
    rebuilt: ChunkDelta = {}
    for field in DELTA_FIELDS:
        value = delta.get(field)
        if value is not None:
            rebuilt[field] = value  # type: ignore[literal-required]
    return rebuilt


def normalize_chunk(chunk: Mapping[str, Any]) -> ChunkObject:
    choices: list[ChunkChoice] = []
    for position, choice in enumerate(_choices(chunk)):
        choices.append(
            {
                "index": choice.get("index", position),
                "delta": _rebuild_delta(_as_mapping(choice.get("delta"))),
                "finish_reason": choice.get("finish_reason"),
                "logprobs": None,
            }
        )
    result: ChunkObject = {
        "id": chunk.get("id"),
        "object": "chat.completion.chunk",
        "created": chunk.get("created"),
        "model": chunk.get("model"),
        "choices": choices,
    }
    usage = chunk.get("usage")
    if usage is not None:
        result["usage"] = _rebuild_usage(_as_mapping(usage))
    return result


COMPLETION_TRANSFORMS: dict[str, CompletionTransform] = {
    "strict": normalize_completion,
}

CHUNK_TRANSFORMS: dict[str, ChunkTransform] = {
    "strict": normalize_chunk,
}
