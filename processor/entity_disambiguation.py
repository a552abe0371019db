"""
Entity Disambiguation Module

Handles entity name normalization, similarity scoring and canonical name
selection for the entity resolver.
"""

import re
from typing import Iterable, List, Optional

_DISALLOWED_CHARS = re.compile(r"[^\w\s&'-]")


def normalize_entity_name(name: Optional[str]) -> str:
    """
    Normalize an entity name for matching.

    Trims, collapses whitespace, strips punctuation other than &, ' and -,
    and lowercases.

    Args:
        name: Surface form of the name

    Returns:
        Normalized name ("" for missing input)
    """
    if not name:
        return ""
    text = " ".join(name.split())
    text = _DISALLOWED_CHARS.sub("", text)
    return text.lower()


def word_jaccard(a: str, b: str) -> float:
    """Jaccard similarity of the whitespace-separated word sets of two strings."""
    words1 = set(a.split())
    words2 = set(b.split())
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


def extract_context_snippet(text: str, entity_name: str, context_length: int = 100) -> str:
    """
    Cut a window of text around the first occurrence of an entity name.

    When the name does not occur the beginning of the text is returned.
    Ellipses mark truncated ends.
    """
    if not text:
        return ""

    index = text.lower().find(entity_name.lower()) if entity_name else -1
    if index == -1:
        return text[:context_length].strip() + "..."

    half = context_length // 2
    start = max(0, index - half)
    end = min(len(text), index + len(entity_name) + half)

    snippet = text[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet.strip()


class EntityDisambiguator:
    """
    Decides whether two entity names denote the same concept.

    Two names merge when both are non-empty after normalization and they are
    equal, one contains the other, or their word-level Jaccard similarity
    reaches the merge threshold.
    """

    def __init__(self, merge_threshold: float = 0.8):
        """
        Initialize the entity disambiguator.

        Args:
            merge_threshold: Minimum word-level Jaccard (0-1) to treat names as aliases
        """
        self.merge_threshold = merge_threshold

    normalize = staticmethod(normalize_entity_name)

    def calculate_similarity(self, name1: str, name2: str) -> float:
        """
        Similarity score between two names (0-1).

        Equal names score 1.0; when one contains the other the score is the
        length ratio; otherwise it is the word-level Jaccard.
        """
        s1 = normalize_entity_name(name1)
        s2 = normalize_entity_name(name2)
        if not s1 or not s2:
            return 0.0
        if s1 == s2:
            return 1.0
        if s1 in s2 or s2 in s1:
            shorter, longer = sorted((s1, s2), key=len)
            return len(shorter) / len(longer)
        return word_jaccard(s1, s2)

    def should_merge(self, name1: str, name2: str) -> bool:
        s1 = normalize_entity_name(name1)
        s2 = normalize_entity_name(name2)
        if not s1 or not s2:
            return False
        if s1 == s2 or s1 in s2 or s2 in s1:
            return True
        return word_jaccard(s1, s2) >= self.merge_threshold

    @staticmethod
    def unique_names(names: Iterable[str]) -> List[str]:
        """Drop names whose normalized form was already seen; first surface form wins."""
        seen = set()
        unique: List[str] = []
        for name in names:
            if not name:
                continue
            key = normalize_entity_name(name)
            if not key or key in seen:
                continue
            seen.add(key)
            unique.append(name)
        return unique

    @staticmethod
    def select_canonical_name(names: List[str]) -> str:
        """Prefer the longest name (usually most complete); first one wins ties."""
        if not names:
            return ""
        longest = names[0]
        for name in names[1:]:
            if len(name) > len(longest):
                longest = name
        return longest

    def __repr__(self) -> str:
        return f"EntityDisambiguator(merge_threshold={self.merge_threshold})"
