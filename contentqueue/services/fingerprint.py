"""Content fingerprinting and topic similarity - deep helper module."""

import hashlib
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol

KEY_PHRASE_COUNT = 10
"""Most frequent words kept as key phrases."""

KEY_PHRASE_MIN_LENGTH = 4
"""Words shorter than this are too common to be useful key phrases."""

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lowercase, trim, and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", text.lower()).strip()


def sha256_hex(text: str) -> str:
    return hashlib.sha256(normalize(text).encode("utf-8")).hexdigest()


def extract_key_phrases(content: str, count: int = KEY_PHRASE_COUNT) -> List[str]:
    """Most frequent words of at least four letters, most frequent first."""
    words = [
        word for word in _NON_WORD.sub(" ", content.lower()).split()
        if len(word) >= KEY_PHRASE_MIN_LENGTH
    ]
    return [word for word, _ in Counter(words).most_common(count)]


@dataclass
class ContentFingerprint:
    """What is stored in Job.content_fingerprint."""
    topic_hash: str
    content_hash: Optional[str] = None
    title_hash: Optional[str] = None
    word_count: int = 0
    key_phrases: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ContentFingerprint"]:
        if not data or not data.get("topic_hash"):
            return None
        return cls(
            topic_hash=data["topic_hash"],
            content_hash=data.get("content_hash"),
            title_hash=data.get("title_hash"),
            word_count=data.get("word_count", 0),
            key_phrases=list(data.get("key_phrases") or []),
        )


class Fingerprinter(Protocol):
    """Pluggable similarity strategy used by the duplicate guard."""

    def fingerprint(self, topic: str, content: Optional[str] = None,
                    title: Optional[str] = None) -> ContentFingerprint:
        ...

    def topic_similarity(self, a: str, b: str) -> float:
        ...


class TokenOverlapFingerprinter:
    """Jaccard overlap of lower-cased whitespace tokens, SHA-256 hashes."""

    def fingerprint(self, topic: str, content: Optional[str] = None,
                    title: Optional[str] = None) -> ContentFingerprint:
        fp = ContentFingerprint(topic_hash=sha256_hex(topic))
        if content:
            fp.content_hash = sha256_hex(content)
            fp.word_count = len(content.split())
            fp.key_phrases = extract_key_phrases(content)
        if title:
            fp.title_hash = sha256_hex(title)
        return fp

    def topic_similarity(self, a: str, b: str) -> float:
        """|A ∩ B| / |A ∪ B| over token sets; 0.0 when both are empty."""
        tokens_a = set(normalize(a).split())
        tokens_b = set(normalize(b).split())
        union = tokens_a | tokens_b
        if not union:
            return 0.0
        return len(tokens_a & tokens_b) / len(union)
