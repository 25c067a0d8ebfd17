from typing import Iterable, Optional, Set


def normalize_term(term: Optional[str]) -> str:
    """Lowercases and collapses whitespace so 'Machine  Learning ' == 'machine learning'."""
    if not term:
        return ""
    return " ".join(term.split()).lower()


def normalize_terms(terms: Optional[Iterable[str]]) -> Set[str]:
    """Normalized, de-duplicated set of non-empty terms."""
    if not terms:
        return set()
    normalized = {normalize_term(t) for t in terms if isinstance(t, str)}
    normalized.discard("")
    return normalized
