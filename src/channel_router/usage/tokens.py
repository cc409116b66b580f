"""Token counting for attempts whose provider reported no usage.

tiktoken is tried first. If the encoder cannot be loaded (offline, unknown
encoding) the character heuristic is used instead. Either way the result is
an estimate and the record is flagged as such.

Loading an encoder may download its BPE file. A failed load is remembered so
later counts go straight to the heuristic, and async callers load through
load_tokenizer(), which runs off the event loop under a time limit.
"""

import asyncio
import logging
import math
import re
from typing import Any, Dict, Iterable, Optional

import tiktoken

logger = logging.getLogger(__name__)

_CJK_RE = re.compile(r"[぀-ヿ㐀-䶿一-鿿가-힯]")
_WORD_RE = re.compile(r"[A-Za-z]+")

# Marks an encoding that failed to load
_UNAVAILABLE = object()

_cached_encoders: Dict[str, Any] = {}


def _load_encoder(encoding_name: str):
    try:
        return tiktoken.get_encoding(encoding_name)
    except ValueError:
        pass
    try:
        return tiktoken.encoding_for_model(encoding_name)
    except KeyError:
        return tiktoken.get_encoding("cl100k_base")


def get_tokenizer(encoding_name: str = "cl100k_base"):
    """Return a cached tiktoken encoder, or None if it cannot be loaded.

    Accepts either an encoding name or a model name; unknown model names use
    cl100k_base. Load failures are cached too, so each encoding is fetched
    at most once per process.
    """
    encoder = _cached_encoders.get(encoding_name)
    if encoder is None:
        try:
            encoder = _load_encoder(encoding_name)
        except Exception as e:
            logger.warning(f"Tokenizer {encoding_name} unavailable, estimating heuristically: {e}")
            encoder = _UNAVAILABLE
        _cached_encoders[encoding_name] = encoder
    return None if encoder is _UNAVAILABLE else encoder


def tokenizer_loaded(encoding_name: str = "cl100k_base") -> bool:
    """True once a load of ``encoding_name`` has finished, successfully or not."""
    return encoding_name in _cached_encoders


async def load_tokenizer(
    encoding_name: str = "cl100k_base",
    timeout: Optional[float] = None,
) -> None:
    """Load an encoder in a worker thread without blocking the loop.

    If the load outlives ``timeout`` the encoding is marked unavailable for
    now; the worker keeps going and replaces the mark if it succeeds later.
    """
    if tokenizer_loaded(encoding_name):
        return
    try:
        await asyncio.wait_for(asyncio.to_thread(get_tokenizer, encoding_name), timeout)
    except asyncio.TimeoutError:
        logger.warning(
            f"Tokenizer {encoding_name} still loading after {timeout}s, estimating heuristically"
        )
        _cached_encoders.setdefault(encoding_name, _UNAVAILABLE)


def heuristic_token_count(text: str) -> int:
    """ceil(cjk/1.5 + english_words*1.3 + other_chars/4)."""
    if not text:
        return 0
    cjk = len(_CJK_RE.findall(text))
    words = _WORD_RE.findall(text)
    word_chars = sum(len(w) for w in words)
    other = len(re.sub(r"\s", "", text)) - cjk - word_chars
    return math.ceil(cjk / 1.5 + len(words) * 1.3 + max(other, 0) / 4)


def count_tokens(text: Optional[str], encoding_name: str = "cl100k_base") -> int:
    """Estimate tokens in ``text``, falling back to the heuristic."""
    if not text:
        return 0
    try:
        encoder = get_tokenizer(encoding_name)
        if encoder is not None:
            return len(encoder.encode(text))
    except Exception as e:
        logger.debug(f"Tokenizer failed, using heuristic: {e}")
    return heuristic_token_count(text)


def count_message_tokens(
    messages: Iterable[Dict[str, Any]],
    encoding_name: str = "cl100k_base",
) -> int:
    """Estimate prompt tokens for canonical messages (text blocks only)."""
    total = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            total += count_tokens(content, encoding_name)
        elif isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "text":
                    total += count_tokens(block.get("text"), encoding_name)
    return total
