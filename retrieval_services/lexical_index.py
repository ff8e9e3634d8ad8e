"""Lexical Index implementation.

Keyword scoring over chunk text. Queries and content are tokenized into runs
of ASCII alphanumerics and runs of CJK ideographs; Chinese has no word
boundaries, so character runs are used instead of whitespace splitting.
"""
import logging
import re
from typing import List, NamedTuple, Optional, Sequence, Tuple

from retrieval_services.models import Chunk

# Configure logging
logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r'[a-zA-Z0-9]+|[一-龥]+')
CJK_RUN_PATTERN = re.compile(r'^[一-龥]+$')

EXACT_MATCH_SCORE = 10.0
TOKEN_MATCH_SCORE = 1.0


class LexicalMatch(NamedTuple):
    """A scored chunk; ``exact`` is set when the whole query occurs verbatim."""
    chunk: Chunk
    score: float
    exact: bool = False


def tokenize(text: str) -> List[str]:
    """Extract lower-cased ASCII and CJK tokens, dropping single ASCII characters.

    Duplicate tokens are removed while keeping first-seen order.
    """
    tokens = []
    seen = set()
    for token in TOKEN_PATTERN.findall(text.lower()):
        if len(token) < 2 and not CJK_RUN_PATTERN.match(token):
            continue
        if token not in seen:
            seen.add(token)
            tokens.append(token)
    return tokens


class LexicalIndex:
    """Token and phrase scoring over a candidate chunk set."""

    def __init__(self, exact_match_score: float = EXACT_MATCH_SCORE,
                 token_match_score: float = TOKEN_MATCH_SCORE):
        self.exact_match_score = exact_match_score
        self.token_match_score = token_match_score

    def score(self, query: str, content: str, tokens: Optional[Sequence[str]] = None) -> float:
        """Score one piece of content against a query."""
        return self.match(query, content, tokens)[0]

    def match(self, query: str, content: str,
              tokens: Optional[Sequence[str]] = None) -> Tuple[float, bool]:
        """Score one piece of content and report whether the full query matched.

        Args:
            query: Raw query text
            content: Chunk content
            tokens: Pre-tokenized query, to avoid re-tokenizing per chunk

        Returns:
            ``(score, exact)``: exact full-query bonus plus one point per
            matched token, and whether the full query occurred
        """
        normalized_query = query.strip().lower()
        if not normalized_query:
            return 0.0, False

        content_lower = content.lower()
        if tokens is None:
            tokens = tokenize(normalized_query)

        score = 0.0
        exact = normalized_query in content_lower
        if exact:
            score += self.exact_match_score
        for token in tokens:
            if token in content_lower:
                score += self.token_match_score
        return score, exact

    def search(self, query: str, chunks: Sequence[Chunk],
               limit: Optional[int] = None) -> List[LexicalMatch]:
        """Rank retrievable chunks by lexical score.

        Chunks scoring zero are excluded; ties are ordered by chunk id.
        """
        tokens = tokenize(query)
        results = []
        for chunk in chunks:
            if not chunk.is_retrievable:
                continue
            value, exact = self.match(query, chunk.content, tokens)
            if value > 0:
                results.append(LexicalMatch(chunk, value, exact))

        results.sort(key=lambda item: (-item.score, item.chunk.id))
        if limit is not None:
            results = results[:limit]
        logger.debug(f"Lexical search for '{query[:50]}' matched {len(results)} chunks")
        return results
