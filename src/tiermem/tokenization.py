"""
Shared tokenization helpers for keyword matching and turn token estimates.
"""
from __future__ import annotations

import math
import re
from typing import Iterable

import tiktoken

_UNICODE_WORD_RE = re.compile(r"\w+", flags=re.UNICODE)

_TOKEN_ENCODER = None
_TOKEN_ENCODER_FAILED = False


def tokenize_for_matching(text: str, *, min_len: int = 1, limit: int | None = None) -> list[str]:
    """
    Tokenizes text with Unicode-aware word boundaries.
    Keeps letters/numbers from non-Latin scripts and normalizes via casefold().
    """
    safe_min_len = max(1, int(min_len))
    max_tokens = int(limit) if limit is not None else None

    out: list[str] = []
    for raw in _UNICODE_WORD_RE.findall(str(text or "").casefold()):
        token = raw.strip("_")
        if not token:
            continue
        if len(token) < safe_min_len:
            continue
        if not any(ch.isalnum() for ch in token):
            continue
        out.append(token)
        if max_tokens is not None and len(out) >= max_tokens:
            break
    return out


def count_phrase_hits(tokens: list[str], phrases: Iterable[str]) -> int:
    """
    Counts occurrences of single- or multi-word phrases in a token list.
    Phrases are tokenized the same way as the text so "thank you" matches across punctuation.
    """
    hits = 0
    for phrase in phrases:
        needle = tokenize_for_matching(phrase)
        if not needle:
            continue
        width = len(needle)
        for start in range(len(tokens) - width + 1):
            if tokens[start:start + width] == needle:
                hits += 1
    return hits


def _get_token_encoder():
    global _TOKEN_ENCODER, _TOKEN_ENCODER_FAILED
    if _TOKEN_ENCODER is None and not _TOKEN_ENCODER_FAILED:
        try:
            _TOKEN_ENCODER = tiktoken.get_encoding("cl100k_base")
        except Exception:
            # Encoding files are fetched on first use and may be unreachable offline.
            _TOKEN_ENCODER_FAILED = True
    return _TOKEN_ENCODER


def word_token_estimate(text: str) -> int:
    """Cheap word-based estimate: about 1.3 BPE tokens per word."""
    words = tokenize_for_matching(text)
    if not words:
        return 0
    return int(math.ceil(len(words) * 1.3))


def estimate_text_tokens(text: str) -> int:
    payload = str(text or "")
    if not payload:
        return 0
    encoder = _get_token_encoder()
    if encoder is not None:
        try:
            return int(len(encoder.encode(payload)))
        except Exception:
            pass
    # Fallback heuristic when tokenizer backend is unavailable.
    return max(1, word_token_estimate(payload))
