"""Fingerprints: exact content digests and coarse fuzzy keys for conversations.

The content hash identifies a message sequence exactly. The fuzzy key groups
captures of the same conversation taken at different times: it is made of a
day bucket, a digest of the title plus the first K messages (the head) and a
digest of the title plus the last K messages (the tail). A continuation that
gained trailing messages keeps its head; a capture missing early history
keeps its tail.
"""

import hashlib
import re
import unicodedata
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone

from chat_stash.models import Conversation, Message

DEFAULT_FUZZY_K = 2

# Digest length (hex chars) for head/tail components of the fuzzy key
FUZZY_DIGEST_LENGTH = 16

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\u200b-\u200f\ufeff]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class Fingerprint:
    """The pair of a conversation's exact digest and its fuzzy key."""

    content_hash: str
    fuzzy_key: str

    @property
    def day(self) -> str:
        return self.fuzzy_key.split(":")[0]

    @property
    def head_bucket(self) -> str:
        return head_bucket(self.fuzzy_key)

    @property
    def tail_bucket(self) -> str:
        return tail_bucket(self.fuzzy_key)


def head_bucket(fuzzy_key: str) -> str:
    day, head, _ = fuzzy_key.split(":")
    return f"{day}:h:{head}"


def tail_bucket(fuzzy_key: str) -> str:
    day, _, tail = fuzzy_key.split(":")
    return f"{day}:t:{tail}"


def normalize_content(text: str) -> str:
    """Normalize message text so that capture artefacts do not change hashes.

    Applies NFC normalization, drops control and zero-width characters,
    and collapses all whitespace runs to a single space.
    """
    text = unicodedata.normalize("NFC", text)
    text = _CONTROL_CHARS.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def normalize_title(title: str) -> str:
    return normalize_content(title).casefold()


def _update_field(hasher, value: str) -> None:
    # Length-prefix every field so ("ab", "c") and ("a", "bc") never collide
    encoded = value.encode("utf-8")
    hasher.update(len(encoded).to_bytes(8, "big"))
    hasher.update(encoded)


def compute_content_hash(messages: Sequence[Message]) -> str:
    """SHA-256 over (role, content, sequence) tuples in sequence order."""
    hasher = hashlib.sha256()
    for message in sorted(messages, key=lambda m: m.sequence):
        _update_field(hasher, message.role)
        _update_field(hasher, normalize_content(message.content))
        _update_field(hasher, str(message.sequence))
    return hasher.hexdigest()


def day_bucket(ts: int) -> str:
    """UTC day of a Unix timestamp as YYYY-MM-DD."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


def _window_digest(title: str, messages: Iterable[Message]) -> str:
    hasher = hashlib.sha256()
    _update_field(hasher, normalize_title(title))
    for message in messages:
        _update_field(hasher, message.role)
        _update_field(hasher, normalize_content(message.content))
    return hasher.hexdigest()[:FUZZY_DIGEST_LENGTH]


def compute_fuzzy_key(conversation: Conversation, k: int = DEFAULT_FUZZY_K) -> str:
    """Coarse similarity key: ``"<day>:<head digest>:<tail digest>"``."""
    messages = sorted(conversation.messages, key=lambda m: m.sequence)
    head = _window_digest(conversation.title, messages[:k])
    tail = _window_digest(conversation.title, messages[-k:] if messages else [])
    return f"{day_bucket(conversation.created_at)}:{head}:{tail}"


def fingerprint(conversation: Conversation, k: int = DEFAULT_FUZZY_K) -> Fingerprint:
    """Compute the fingerprint of a conversation. Pure."""
    return Fingerprint(
        content_hash=compute_content_hash(conversation.messages),
        fuzzy_key=compute_fuzzy_key(conversation, k),
    )


def apply_fingerprint(conversation: Conversation, k: int = DEFAULT_FUZZY_K) -> Conversation:
    """Return a copy of the conversation with its fingerprint filled in."""
    fp = fingerprint(conversation, k)
    return conversation.with_fingerprint(fp.content_hash, fp.fuzzy_key)


def fingerprint_many(
    conversations: Sequence[Conversation],
    k: int = DEFAULT_FUZZY_K,
    max_workers: int = 4,
) -> list[Conversation]:
    """Fingerprint conversations concurrently, preserving input order."""
    if max_workers <= 1 or len(conversations) <= 1:
        return [apply_fingerprint(c, k) for c in conversations]

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(lambda c: apply_fingerprint(c, k), conversations))
