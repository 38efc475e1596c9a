from __future__ import annotations

"""Structure-aware markdown chunking with line and heading metadata."""

import hashlib
import logging
import re
from bisect import bisect_right
from dataclasses import dataclass

from docrag.loaders.markdown import build_document_record
from docrag.rag.types import ChunkRecord, HeadingContext, ParsedDocument

logger = logging.getLogger(__name__)

DEFAULT_SEPARATORS: tuple[str, ...] = (
    "\n## ",
    "\n### ",
    "\n#### ",
    "\n##### ",
    "\n\n",
    "\n",
    " ",
    "",
)

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+)$")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_WORD_RE = re.compile(r"\S+")


def count_tokens(text: str, use_tiktoken: bool = True, encoding_name: str = "cl100k_base") -> int:
    """Count tokens with tiktoken, or whitespace-separated words when disabled."""
    if not use_tiktoken:
        return len(_WORD_RE.findall(text))
    import tiktoken

    encoding = tiktoken.get_encoding(encoding_name)
    return len(encoding.encode(text))


@dataclass
class RecursiveTextSplitter:
    """Split text on a separator hierarchy, merging pieces up to chunk_size.

    Separators are kept at the head of the piece that follows them. A piece
    that is still longer than chunk_size is split again with the next, finer
    separator. Merged chunks carry up to chunk_overlap characters of the
    previous chunk's tail.
    """
    chunk_size: int = 1000
    chunk_overlap: int = 200
    separators: tuple[str, ...] = DEFAULT_SEPARATORS

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")

    def split_text(self, text: str) -> list[str]:
        return self._split(text, list(self.separators))

    def _split(self, text: str, separators: list[str]) -> list[str]:
        separator = separators[-1] if separators else ""
        remaining: list[str] = []
        for idx, candidate in enumerate(separators):
            if candidate == "":
                separator = candidate
                break
            if candidate in text:
                separator = candidate
                remaining = separators[idx + 1:]
                break

        chunks: list[str] = []
        pending: list[str] = []
        for piece in _split_keeping_separator(text, separator):
            if len(piece) < self.chunk_size:
                pending.append(piece)
                continue
            if pending:
                chunks.extend(self._merge(pending))
                pending = []
            if remaining:
                chunks.extend(self._split(piece, remaining))
            else:
                chunks.append(piece)
        if pending:
            chunks.extend(self._merge(pending))
        return chunks

    def _merge(self, pieces: list[str]) -> list[str]:
        merged: list[str] = []
        window: list[str] = []
        total = 0
        for piece in pieces:
            length = len(piece)
            if total + length > self.chunk_size and window:
                if total > self.chunk_size:
                    logger.warning(
                        "chunk_exceeds_size",
                        extra={"size": total, "chunk_size": self.chunk_size},
                    )
                text = "".join(window).strip()
                if text:
                    merged.append(text)
                while total > self.chunk_overlap or (
                    total + length > self.chunk_size and total > 0
                ):
                    total -= len(window[0])
                    window.pop(0)
            window.append(piece)
            total += length
        text = "".join(window).strip()
        if text:
            merged.append(text)
        return merged


def _split_keeping_separator(text: str, separator: str) -> list[str]:
    if not separator:
        return list(text)
    parts = re.split(f"({re.escape(separator)})", text)
    pieces = [parts[0]]
    pieces.extend(parts[i] + parts[i + 1] for i in range(1, len(parts) - 1, 2))
    if len(parts) % 2 == 0:
        pieces.append(parts[-1])
    return [piece for piece in pieces if piece]


def build_heading_index(body: str, line_offset: int = 0) -> list[HeadingContext]:
    """Return ATX headings of the body in line order, skipping fenced code."""
    headings: list[HeadingContext] = []
    in_fence = False
    for idx, line in enumerate(body.split("\n")):
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = _HEADING_RE.match(line)
        if match:
            headings.append(
                HeadingContext(
                    text=match.group(2).strip(),
                    level=len(match.group(1)),
                    line_number=idx + 1 + line_offset,
                )
            )
    return headings


def find_heading_context(
    headings: list[HeadingContext], start_line: int
) -> HeadingContext | None:
    """Return the closest heading at or before start_line."""
    if not headings:
        return None
    position = bisect_right([heading.line_number for heading in headings], start_line)
    if position == 0:
        return None
    return headings[position - 1]


def locate_chunk_lines(
    body_lines: list[str], chunk: str, line_offset: int = 0
) -> tuple[int, int]:
    """Locate a chunk's 1-based start/end lines in the source.

    Lines are compared with surrounding whitespace stripped. When no exact
    block match exists, the first and last chunk lines are matched on their
    own, then the first line as a substring; the last resort is line 1 with
    the end estimated from the chunk's line count.
    """
    stripped = [line.strip() for line in body_lines]
    chunk_lines = [line.strip() for line in chunk.split("\n")]
    span = len(chunk_lines)

    for start in range(0, len(stripped) - span + 1):
        if stripped[start:start + span] == chunk_lines:
            return start + 1 + line_offset, start + span + line_offset

    first = chunk_lines[0]
    last = chunk_lines[-1]
    if first:
        for start, line in enumerate(stripped):
            if line != first:
                continue
            for end in range(start, len(stripped)):
                if stripped[end] == last:
                    return start + 1 + line_offset, end + 1 + line_offset
            return start + 1 + line_offset, min(start + span, len(stripped)) + line_offset
        for start, line in enumerate(stripped):
            if first in line:
                return start + 1 + line_offset, min(start + span, len(stripped)) + line_offset

    logger.debug("chunk_position_estimated", extra={"chunk_chars": len(chunk)})
    return 1 + line_offset, span + line_offset


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def make_chunk_id(source_path: str, chunk_index: int) -> str:
    return f"{source_path}_chunk_{chunk_index}"


@dataclass
class Chunker:
    """Turn a parsed markdown document into ChunkRecords."""
    chunk_size: int = 1000
    chunk_overlap: int = 200

    def __post_init__(self) -> None:
        self._splitter = RecursiveTextSplitter(
            chunk_size=self.chunk_size, chunk_overlap=self.chunk_overlap
        )

    def chunk(self, parsed: ParsedDocument) -> list[ChunkRecord]:
        """Chunk a document deterministically; an empty body yields no chunks."""
        if not parsed.body.strip():
            return []
        pieces = self._splitter.split_text(parsed.body)
        if not pieces:
            return []
        document = build_document_record(parsed, total_chunks=len(pieces))
        body_lines = parsed.body.split("\n")
        headings = build_heading_index(parsed.body, parsed.frontmatter_lines)

        records: list[ChunkRecord] = []
        for idx, piece in enumerate(pieces):
            start_line, end_line = locate_chunk_lines(
                body_lines, piece, parsed.frontmatter_lines
            )
            records.append(
                ChunkRecord(
                    chunk_id=make_chunk_id(parsed.source_path, idx),
                    document=document,
                    content=piece,
                    chunk_index=idx,
                    start_line=start_line,
                    end_line=end_line,
                    heading=find_heading_context(headings, start_line),
                    character_count=len(piece),
                    word_count=len(_WORD_RE.findall(piece)),
                    content_hash=content_hash(piece),
                )
            )
        logger.info(
            "document_chunked",
            extra={"source": parsed.source_path, "chunks": len(records)},
        )
        return records
