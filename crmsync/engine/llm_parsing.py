"""Parsing and accounting helpers for LLM chat completions."""

import json
import re
from typing import Any

from crmsync.models.enrichment import TokenUsage

_FENCE_OPEN = re.compile(r"^```[a-zA-Z0-9_-]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```\s*$")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence (```json ... ```), if any."""
    text = (text or "").strip()
    text = _FENCE_OPEN.sub("", text, count=1)
    text = _FENCE_CLOSE.sub("", text, count=1)
    return text.strip()


def parse_indexed_array(content: str) -> list[dict[str, Any]]:
    """
    Parse a model reply expected to be a JSON array of objects with ``index``.

    Raises:
        ValueError: If the reply is not valid JSON or not an array
    """
    parsed = json.loads(strip_code_fences(content))
    if not isinstance(parsed, list):
        raise ValueError("Expected a JSON array")
    return [entry for entry in parsed if isinstance(entry, dict)]


def by_index(entries: list[dict[str, Any]]) -> dict[int, dict[str, Any]]:
    """Map entries by their integer ``index``; the first entry per index wins."""
    indexed: dict[int, dict[str, Any]] = {}
    for entry in entries:
        index = entry.get("index")
        if isinstance(index, bool):
            continue
        if isinstance(index, str) and index.strip().isdigit():
            index = int(index.strip())
        if isinstance(index, int) and index not in indexed:
            indexed[index] = entry
    return indexed


def calculate_cost(
    prompt_tokens: int,
    completion_tokens: int,
    input_cost_per_1k: float = 0.00015,
    output_cost_per_1k: float = 0.0006,
) -> float:
    cost = prompt_tokens / 1000 * input_cost_per_1k + completion_tokens / 1000 * output_cost_per_1k
    return round(cost, 5)


def usage_from_response(
    response: Any,
    input_cost_per_1k: float = 0.00015,
    output_cost_per_1k: float = 0.0006,
) -> TokenUsage:
    """Token usage and cost of one chat completion (zeros when usage is absent)."""
    usage = getattr(response, "usage", None)
    prompt = int(getattr(usage, "prompt_tokens", 0) or 0)
    completion = int(getattr(usage, "completion_tokens", 0) or 0)
    total = int(getattr(usage, "total_tokens", 0) or 0) or prompt + completion
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total,
        cost=calculate_cost(prompt, completion, input_cost_per_1k, output_cost_per_1k),
    )


def response_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    return getattr(message, "content", "") or ""
