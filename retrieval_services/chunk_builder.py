"""Chunk Builder implementation.

This module is responsible for splitting extracted document text into a
two-level hierarchy: large ``parent`` passages that give the answer step its
surrounding context, and small overlapping ``child`` (or ``window``) passages
that are actually scored at query time.

Boundary detection is a small parser over line tokens (heading, fence open,
fence close, blank, text). Code fences are assembled into atomic blocks by
the tokenizer state machine, so a fence can never be split across chunks.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from retrieval_services.errors import DataIntegrityError
from retrieval_services.models import Chunk, ChunkType
from retrieval_services.settings import RetrievalSettings

# Configure logging
logger = logging.getLogger(__name__)

FENCE_MARKER = "```"

HEADING_PATTERN = re.compile(r'^(#{1,6})\s+(.+?)\s*#*\s*$')
TABLE_ROW_PATTERN = re.compile(r'^\s*\|.*\|\s*$')
SENTENCE_PATTERN = re.compile(r'.+?(?:[。！？；]+|[.!?;]+(?=\s)|\n|$)', re.DOTALL)
CJK_PATTERN = re.compile(r'[一-龥]')

# Line token kinds
HEADING = "heading"
FENCE_OPEN = "fence_open"
FENCE_CLOSE = "fence_close"
BLANK = "blank"
TEXT = "text"

# Block kinds
PARAGRAPH = "paragraph"
CODE = "code"
TABLE = "table"


@dataclass
class LineToken:
    """A single classified source line with its character span."""
    kind: str
    start: int
    end: int
    level: int = 0
    title: str = ""
    in_fence: bool = False


@dataclass
class Block:
    """A semantic unit: heading, paragraph, fenced code or table."""
    kind: str
    start: int
    end: int
    level: int = 0
    title: str = ""
    breadcrumbs: List[str] = field(default_factory=list)

    @property
    def length(self) -> int:
        return self.end - self.start

    @property
    def atomic(self) -> bool:
        return self.kind in (CODE, TABLE)


@dataclass
class Piece:
    """Smallest unit children are assembled from."""
    start: int
    end: int
    splittable: bool

    @property
    def length(self) -> int:
        return self.end - self.start


def estimate_tokens(text: str) -> int:
    """Estimate token count: CJK characters ~2 per token, other text ~4 per token."""
    if not text:
        return 0
    cjk = len(CJK_PATTERN.findall(text))
    other = len(text) - cjk
    return max(1, -(-cjk // 2) + -(-other // 4))


def is_fence_line(line: str) -> bool:
    return line.lstrip().startswith(FENCE_MARKER)


def normalize_text(text: str) -> str:
    """Normalize line endings and close a trailing unterminated code fence."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    fences = sum(1 for line in text.split("\n") if is_fence_line(line))
    if fences % 2:
        logger.warning("Document ends inside an open code fence; closing it")
        text = text.rstrip("\n") + "\n" + FENCE_MARKER
    return text


def tokenize_lines(text: str) -> List[LineToken]:
    """Classify every line of ``text``.

    The tokenizer tracks fence state: inside a fence, every line other than
    the closing marker is text, so headings and blank lines in code do not
    produce boundaries.
    """
    tokens = []
    offset = 0
    in_fence = False
    for line in text.split("\n"):
        start, end = offset, offset + len(line)
        offset = end + 1

        if is_fence_line(line):
            kind = FENCE_CLOSE if in_fence else FENCE_OPEN
            in_fence = not in_fence
            tokens.append(LineToken(kind, start, end, in_fence=True))
            continue

        if in_fence:
            tokens.append(LineToken(TEXT, start, end, in_fence=True))
        elif not line.strip():
            tokens.append(LineToken(BLANK, start, end))
        else:
            match = HEADING_PATTERN.match(line)
            if match:
                tokens.append(LineToken(HEADING, start, end,
                                        level=len(match.group(1)),
                                        title=match.group(2).strip()))
            else:
                tokens.append(LineToken(TEXT, start, end))
    return tokens


def assemble_blocks(text: str, tokens: List[LineToken]) -> List[Block]:
    """Group line tokens into headings, paragraphs, fenced code and tables."""
    blocks: List[Block] = []
    headings: Dict[int, str] = {}
    current: Optional[Block] = None
    code_start: Optional[int] = None

    def breadcrumbs() -> List[str]:
        return [headings[level] for level in sorted(headings)]

    def flush():
        nonlocal current
        if current is not None:
            blocks.append(current)
            current = None

    for token in tokens:
        if code_start is not None:
            if token.kind == FENCE_CLOSE:
                blocks.append(Block(CODE, code_start, token.end, breadcrumbs=breadcrumbs()))
                code_start = None
            continue

        if token.kind == FENCE_OPEN:
            flush()
            code_start = token.start
        elif token.kind == HEADING:
            flush()
            for level in [lvl for lvl in headings if lvl >= token.level]:
                del headings[level]
            headings[token.level] = token.title
            blocks.append(Block(HEADING, token.start, token.end, level=token.level,
                                title=token.title, breadcrumbs=breadcrumbs()))
        elif token.kind == BLANK:
            flush()
        else:
            kind = TABLE if TABLE_ROW_PATTERN.match(text[token.start:token.end]) else PARAGRAPH
            if current is not None and current.kind != kind:
                flush()
            if current is None:
                current = Block(kind, token.start, token.end, breadcrumbs=breadcrumbs())
            else:
                current.end = token.end

    flush()
    if code_start is not None:
        # normalize_text() guarantees closed fences; an open one here is a bug
        raise DataIntegrityError("Unterminated code fence after normalization")
    return blocks


def _trim(text: str, start: int, end: int) -> Tuple[int, int]:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


def split_sentences(text: str, start: int, end: int) -> List[Tuple[int, int]]:
    """Return trimmed sentence spans inside ``text[start:end]``."""
    spans = []
    for match in SENTENCE_PATTERN.finditer(text, start, end):
        s, e = _trim(text, match.start(), match.end())
        if e > s:
            spans.append((s, e))
    return spans or [_trim(text, start, end)]


def _hard_split(start: int, end: int, size: int, overlap: int = 0) -> List[Tuple[int, int]]:
    step = max(1, size - overlap)
    spans = []
    position = start
    while position < end:
        stop = min(position + size, end)
        spans.append((position, stop))
        if stop == end:
            break
        position += step
    return spans


class ChunkBuilder:
    """Builds parent/child chunk hierarchies from plain text or Markdown."""

    def __init__(self, settings: Optional[RetrievalSettings] = None):
        """Initialize the chunk builder.

        Args:
            settings: Retrieval settings providing parent/child sizes and overlap
        """
        self.settings = settings or RetrievalSettings()
        self.parent_size = self.settings.parent_size
        self.child_size = self.settings.child_size
        self.child_overlap = min(self.settings.child_overlap, self.child_size // 2)

    def build(self, document_id: str, text: str) -> List[Chunk]:
        """Split a document into parent and child chunks.

        Args:
            document_id: Identifier of the owning document
            text: Extracted plain text or Markdown

        Returns:
            Chunks ordered by ``chunk_index``; each parent is followed by its children
        """
        if not text or not text.strip():
            logger.warning(f"Document {document_id} has no text to chunk")
            return []

        text = normalize_text(text)
        blocks = self._split_oversized(text, assemble_blocks(text, tokenize_lines(text)))

        chunks: List[Chunk] = []
        index = 0
        for group in self._group_parents(blocks):
            start, end = _trim(text, group[0].start, group[-1].end)
            parent_content = text[start:end]
            crumbs = group[0].breadcrumbs
            parent = Chunk(
                id=self._chunk_id(document_id, index),
                document_id=document_id,
                chunk_index=index,
                chunk_type=ChunkType.PARENT,
                content=parent_content,
                token_count=estimate_tokens(parent_content),
                start=start,
                end=end,
                metadata={
                    "breadcrumbs": crumbs,
                    "header": crumbs[-1] if crumbs else None,
                    "blocks": [block.kind for block in group],
                },
            )
            chunks.append(parent)
            index += 1

            for child_number, (c_start, c_end, chunk_type) in enumerate(self._child_spans(text, group)):
                content = text[c_start:c_end]
                chunks.append(Chunk(
                    id=self._chunk_id(document_id, index),
                    document_id=document_id,
                    chunk_index=index,
                    chunk_type=chunk_type,
                    content=content,
                    token_count=estimate_tokens(content),
                    parent_id=parent.id,
                    start=c_start,
                    end=c_end,
                    metadata={"breadcrumbs": crumbs, "child_index": child_number},
                ))
                index += 1

        validate_hierarchy(chunks)
        parents = sum(1 for chunk in chunks if chunk.chunk_type == ChunkType.PARENT)
        logger.info(f"Chunked document {document_id}: {parents} parents, {len(chunks) - parents} children")
        return chunks

    @staticmethod
    def _chunk_id(document_id: str, index: int) -> str:
        return f"{document_id}:{index:05d}"

    def _split_oversized(self, text: str, blocks: List[Block]) -> List[Block]:
        """Break prose blocks larger than a parent at sentence boundaries.

        Code and tables are never split, even when they exceed the parent size.
        """
        result = []
        for block in blocks:
            if block.atomic or block.kind == HEADING or block.length <= self.parent_size:
                result.append(block)
                continue

            sentences = []
            for s, e in split_sentences(text, block.start, block.end):
                if e - s > self.parent_size:
                    sentences.extend(_hard_split(s, e, self.parent_size))
                else:
                    sentences.append((s, e))

            piece_start, piece_end = sentences[0]
            for s, e in sentences[1:]:
                if e - piece_start > self.parent_size:
                    result.append(Block(PARAGRAPH, piece_start, piece_end, breadcrumbs=block.breadcrumbs))
                    piece_start = s
                piece_end = e
            result.append(Block(PARAGRAPH, piece_start, piece_end, breadcrumbs=block.breadcrumbs))
        return result

    def _group_parents(self, blocks: List[Block]) -> List[List[Block]]:
        groups: List[List[Block]] = []
        current: List[Block] = []
        for block in blocks:
            starts_section = block.kind == HEADING and block.level <= self.settings.section_heading_level
            only_headings = all(b.kind == HEADING for b in current)
            too_large = block.end - (current[0].start if current else block.start) > self.parent_size
            if current and (starts_section or (too_large and not only_headings)):
                groups.append(current)
                current = []
            current.append(block)
        if current:
            groups.append(current)
        return groups

    def _pieces(self, text: str, group: List[Block]) -> List[Piece]:
        pieces = []
        for block in group:
            if block.kind == PARAGRAPH:
                pieces.extend(Piece(s, e, True) for s, e in split_sentences(text, block.start, block.end))
            else:
                s, e = _trim(text, block.start, block.end)
                pieces.append(Piece(s, e, False))
        return [piece for piece in pieces if piece.length > 0]

    def _child_spans(self, text: str, group: List[Block]) -> List[Tuple[int, int, ChunkType]]:
        """Assemble overlapping child spans from the pieces of one parent."""
        pieces = self._pieces(text, group)
        spans: List[Tuple[int, int, ChunkType]] = []
        current: List[Piece] = []

        def emit():
            spans.append((current[0].start, current[-1].end, ChunkType.CHILD))

        for piece in pieces:
            if piece.splittable and piece.length > self.child_size:
                if current:
                    emit()
                    current = []
                for s, e in _hard_split(piece.start, piece.end, self.child_size, self.child_overlap):
                    s, e = _trim(text, s, e)
                    if e > s:
                        spans.append((s, e, ChunkType.WINDOW))
                continue

            if current and piece.end - current[0].start > self.child_size:
                emit()
                current = self._overlap_tail(current, piece)
            current.append(piece)

        if current:
            emit()
        return spans

    def _overlap_tail(self, pieces: List[Piece], incoming: Piece) -> List[Piece]:
        """Trailing pieces (never the first) carried into the next child as overlap."""
        tail: List[Piece] = []
        for piece in reversed(pieces[1:]):
            if incoming.end - piece.start > self.child_size:
                break
            if pieces[-1].end - piece.start > self.child_overlap:
                break
            tail.insert(0, piece)
        return tail


def validate_hierarchy(chunks: List[Chunk]) -> None:
    """Check parent references and spans of a document's chunks.

    Raises:
        DataIntegrityError: if a child references a missing, foreign or non-parent
            chunk, a parent carries a parent_id, or a child span escapes its parent
    """
    by_id = {chunk.id: chunk for chunk in chunks}
    for chunk in chunks:
        if chunk.chunk_type == ChunkType.PARENT:
            if chunk.parent_id is not None:
                raise DataIntegrityError(f"Parent chunk {chunk.id} must not reference another chunk")
            continue

        parent = by_id.get(chunk.parent_id) if chunk.parent_id else None
        if parent is None:
            raise DataIntegrityError(f"Chunk {chunk.id} references missing parent {chunk.parent_id}")
        if parent.chunk_type != ChunkType.PARENT or parent.document_id != chunk.document_id:
            raise DataIntegrityError(f"Chunk {chunk.id} references invalid parent {parent.id}")
        if chunk.start < parent.start or chunk.end > parent.end:
            raise DataIntegrityError(
                f"Chunk {chunk.id} span [{chunk.start}, {chunk.end}) outside parent "
                f"[{parent.start}, {parent.end})"
            )
