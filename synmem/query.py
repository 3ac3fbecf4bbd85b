"""
Query normalization and FTS5 match-expression building.

fts_terms() strips stop words (keeping identifiers) and
build_match_expression() turns the terms into a safe FTS5 MATCH
expression (quoted terms joined by OR).

Free text never reaches FTS5 unquoted, so operator characters and
keywords in user queries (``AND``, ``NEAR``, ``*``, ``:``) cannot cause
syntax errors.
"""

from __future__ import annotations

import logging
import re
from typing import List

logger = logging.getLogger(__name__)

# ── Stop words ──────────────────────────────────────────────────────────

FR_STOP_WORDS = frozenset({
    "le", "la", "les", "un", "une", "des", "du", "de", "en", "dans",
    "pour", "avec", "sur", "par", "qui", "que", "est", "sont", "au",
    "aux", "ce", "cette", "ces", "se", "sa", "son", "ses", "ne", "pas",
    "ou", "et", "mais", "donc", "car", "ni", "si", "comme", "comment",
    "il", "elle", "on", "nous", "vous", "ils", "elles", "je", "tu",
    "mon", "ton", "notre", "votre", "leur", "leurs",
    "y", "en", "dont", "où",
})

EN_STOP_WORDS = frozenset({
    "the", "a", "an", "in", "on", "at", "to", "for", "of", "with",
    "by", "from", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "can", "shall",
    "it", "its", "this", "that", "these", "those",
    "i", "me", "my", "we", "our", "you", "your", "he", "him", "his",
    "she", "her", "they", "them", "their",
    "not", "no", "nor", "so", "but", "or", "and", "if", "then",
    "about", "up", "out", "into", "over", "after", "before",
})

QUESTION_WORDS = frozenset({
    "how", "what", "where", "when", "why", "which", "who", "whom",
    "comment", "quoi", "quel", "quelle", "quels", "quelles", "pourquoi",
})

_ALL_STOP_WORDS = FR_STOP_WORDS | EN_STOP_WORDS | QUESTION_WORDS

# ── Identifier detection ────────────────────────────────────────────────

_CAMEL_RE = re.compile(r"[a-z][A-Z]")           # camelCase or PascalCase
_SNAKE_RE = re.compile(r"[a-zA-Z]_[a-zA-Z]")    # snake_case
_UPPER_RE = re.compile(r"^[A-Z][A-Z0-9_]{2,}$") # UPPER_CASE constant

# Edge punctuation stripped from each whitespace-separated word
_EDGE_PUNCT = ".,;:!?\"'()[]{}<>*^+-~`"


def _is_identifier(word: str) -> bool:
    """Return True if word looks like a code identifier."""
    if _CAMEL_RE.search(word):
        return True
    if _SNAKE_RE.search(word):
        return True
    if _UPPER_RE.match(word):
        return True
    # Dotted path (e.g., com.example.Foo)
    if "." in word and not word.endswith("."):
        return True
    return False


# ── FTS5 expression building ────────────────────────────────────────────

def fts_terms(text: str) -> List[str]:
    """Extract search terms from free text.

    Words are split on whitespace, edge punctuation and double quotes are
    removed, and words without any alphanumeric character are dropped.
    Stop words are removed unless nothing else remains.  Duplicates keep
    their first occurrence.

    Examples:
        >>> fts_terms("how does the Lexer work?")
        ['Lexer', 'work']
        >>> fts_terms("the")
        ['the']
        >>> fts_terms("*** ???")
        []
    """
    raw: list[str] = []
    seen: set = set()
    for w in text.split():
        w = w.replace('"', "").strip(_EDGE_PUNCT)
        if not w or not any(ch.isalnum() for ch in w):
            continue
        key = w.lower()
        if key in seen:
            continue
        seen.add(key)
        raw.append(w)

    if not raw:
        return []
    kept = [w for w in raw if _is_identifier(w) or w.lower() not in _ALL_STOP_WORDS]
    return kept if kept else raw


def build_match_expression(terms: List[str]) -> str:
    """Join terms into an FTS5 MATCH expression.

    Each term is double-quoted (a phrase for the tokenizer), so FTS5
    operators in user input are matched literally.  Terms are OR-ed:
    documents matching any term are candidates and bm25 ranks those
    matching more terms higher.

    Examples:
        >>> build_match_expression(["lexer", "parse"])
        '"lexer" OR "parse"'
    """
    quoted = ['"' + t.replace('"', '""') + '"' for t in terms if t]
    expr = " OR ".join(quoted)
    logger.debug("[query] match expression: %s", expr)
    return expr
