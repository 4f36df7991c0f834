"""
Free-text query handling for the command palette.

User input is reduced to plain word tokens before it reaches either engine,
so quotes, colons, minus signs and boolean keywords typed into the palette
are treated as ordinary text instead of FTS operators.
"""

import re
from typing import List

DEFAULT_SEARCH_LIMIT = 10
MAX_SEARCH_LIMIT = 100

# Unicode word characters minus underscore, which FTS5's default tokenizer splits on
_TOKEN_RE = re.compile(r"[^\W_]+", re.UNICODE)


def tokenize(text: str) -> List[str]:
    """Split free text into lowercase word tokens, dropping duplicates in order."""
    if not text:
        return []
    seen = set()
    tokens = []
    for token in _TOKEN_RE.findall(text.lower()):
        if token not in seen:
            seen.add(token)
            tokens.append(token)
    return tokens


def clamp_limit(limit) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        return DEFAULT_SEARCH_LIMIT
    return max(1, min(value, MAX_SEARCH_LIMIT))


def to_fts5_query(tokens: List[str]) -> str:
    """
    Build an FTS5 MATCH expression: every token quoted and prefix-matched.

    ``['deploy', 'serv']`` becomes ``"deploy"* "serv"*`` (implicit AND).
    """
    return " ".join(f'"{token}"*' for token in tokens)


def to_tsquery(tokens: List[str]) -> str:
    """
    Build a PostgreSQL ``to_tsquery('simple', ...)`` expression with prefix matching.

    Tokens only contain word characters so no tsquery escaping is needed.
    """
    return " & ".join(f"{token}:*" for token in tokens)
