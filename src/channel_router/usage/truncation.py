"""Payload truncation for usage records.

Records keep enough of the request to debug a failure without storing
conversations wholesale.
"""

import json
from typing import Any, Dict, List, Optional

from ..unified_config import TruncationConfig

IMAGE_PLACEHOLDER = "[image]"


def _cap(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"...(+{len(text) - limit} chars)"


def _truncate_content(content: Any, limit: int) -> Any:
    if isinstance(content, str):
        return _cap(content, limit)
    if isinstance(content, list):
        blocks = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                blocks.append({"type": "text", "text": _cap(block.get("text") or "", limit)})
            elif block_type in ("image", "image_url"):
                blocks.append({"type": "image", "text": IMAGE_PLACEHOLDER})
            else:
                blocks.append({"type": block_type or "unknown"})
        return blocks
    return None


def truncate_request(
    messages: Optional[List[Dict[str, Any]]],
    tools: Optional[List[Dict[str, Any]]] = None,
    limits: Optional[TruncationConfig] = None,
    **extra: Any,
) -> Optional[Dict[str, Any]]:
    """Summarize a request for storage on a UsageRecord."""
    if not messages and not tools and not extra:
        return None
    limits = limits or TruncationConfig()

    summary: Dict[str, Any] = dict(extra)
    if messages:
        summary["messages"] = [
            {
                "role": m.get("role", "user"),
                "content": _truncate_content(m.get("content"), limits.max_message_chars),
            }
            for m in messages
        ]
    if tools:
        names = [
            (t.get("function") or {}).get("name") or t.get("name") or "tool"
            for t in tools[: limits.max_tools]
        ]
        if len(tools) > limits.max_tools:
            names.append(f"+{len(tools) - limits.max_tools} more")
        summary["tools"] = names
    return summary


def truncate_response(
    response: Any,
    success: bool,
    limits: Optional[TruncationConfig] = None,
) -> Optional[str]:
    """Serialize and cap a response. Successful responses are not kept."""
    if success or response is None:
        return None
    limits = limits or TruncationConfig()
    if isinstance(response, str):
        text = response
    else:
        text = json.dumps(response, ensure_ascii=False, default=str)
    return _cap(text, limits.max_response_chars)
