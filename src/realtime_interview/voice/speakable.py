"""Utilities for turning interviewer output into speakable text.

Synthesis must never be fed:
- code blocks or inline code markup
- JSON blobs
- markdown / HTML formatting characters

The transcript keeps the original text; only the spoken copy is filtered.
"""

from __future__ import annotations

import json
import re

_TAG_REASONING_RE = re.compile(r"<reasoning>.*?</reasoning>", re.IGNORECASE | re.DOTALL)
_TAG_ANSWER_RE = re.compile(r"<answer>(.*?)</answer>", re.IGNORECASE | re.DOTALL)
_CODE_FENCE_RE = re.compile(r"```.*?(```|$)", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`([^`]*)`")
_JSON_BLOB_RE = re.compile(r"\{[^{}]*\"[^{}]*:[^{}]*\}|\[\s*\{.*?\}\s*\]", re.DOTALL)
_HTML_TAG_RE = re.compile(r"</?[a-zA-Z][^>]*>")
_LINK_RE = re.compile(r"!?\[([^\]]*)\]\([^)]*\)")
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_BULLET_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+", re.MULTILINE)
_QUOTE_RE = re.compile(r"^\s*>\s?", re.MULTILINE)
_EMPHASIS_RE = re.compile(r"(?<!\w)(\*\*|__|\*|_|~~)(?=\S)(.+?)(?<=\S)\1(?!\w)")
_RULE_RE = re.compile(r"^\s*([-*_])(\s*\1){2,}\s*$", re.MULTILINE)


def _looks_like_json(text: str) -> bool:
    t = (text or "").strip()
    if not t:
        return False

    if t.startswith("{") or t.startswith("["):
        try:
            json.loads(t)
            return True
        except json.JSONDecodeError:
            # Starts like JSON but invalid; still not speakable.
            return True

    return False


def _split_sentences(text: str) -> list[str]:
    t = (text or "").strip()
    if not t:
        return []

    parts = re.split(r"(?<=[.!?])\s+", t)
    return [p.strip() for p in parts if p and p.strip()]


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text

    # Prefer cutting at a sentence boundary.
    kept = ""
    for sentence in _split_sentences(text):
        candidate = f"{kept} {sentence}".strip()
        if len(candidate) > max_chars:
            break
        kept = candidate
    if kept:
        return kept
    return text[: max(0, max_chars - 1)].rstrip() + "…"


def to_speakable_text(text: str, *, max_chars: int | None = None) -> str:
    """
    Strip everything that should not be read aloud.

    Args:
        text: Interviewer message as shown in the transcript.
        max_chars: Optional cap; cuts at the last whole sentence that fits.

    Returns:
        Plain text, or an empty string when nothing speakable remains.
    """
    raw = (text or "").strip()
    if not raw:
        return ""

    raw = _TAG_REASONING_RE.sub("", raw)
    m = _TAG_ANSWER_RE.search(raw)
    if m:
        raw = m.group(1)

    raw = _CODE_FENCE_RE.sub(" ", raw).strip()
    if _looks_like_json(raw):
        return ""
    raw = _JSON_BLOB_RE.sub(" ", raw)

    raw = _INLINE_CODE_RE.sub(r"\1", raw)
    raw = _LINK_RE.sub(r"\1", raw)
    raw = _HTML_TAG_RE.sub("", raw)
    raw = _RULE_RE.sub("", raw)
    raw = _HEADING_RE.sub("", raw)
    raw = _QUOTE_RE.sub("", raw)
    raw = _BULLET_RE.sub("", raw)
    raw = _EMPHASIS_RE.sub(r"\2", raw)

    speak = re.sub(r"\s+", " ", raw).strip()
    if max_chars is not None:
        speak = _truncate(speak, max_chars)
    return speak
