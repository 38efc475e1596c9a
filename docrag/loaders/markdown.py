from __future__ import annotations

"""Markdown loader with YAML frontmatter and metadata resolution."""

import logging
import re
from pathlib import Path
from typing import Any

import yaml

from docrag.rag.types import DocumentRecord, ParsedDocument

logger = logging.getLogger(__name__)

_FRONTMATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_H1_RE = re.compile(r"^#\s+(.+?)\s*#*\s*$")


class MarkdownLoaderError(RuntimeError):
    """Raised when a markdown file cannot be read."""
    pass


def find_markdown_files(root: Path) -> list[Path]:
    """Return all markdown files below root in a stable order."""
    if not root.exists():
        raise MarkdownLoaderError(f"Docs directory not found: {root}")
    return sorted(path for path in root.rglob("*.md") if path.is_file())


def split_frontmatter(text: str) -> tuple[dict[str, Any], str, int]:
    """Split YAML frontmatter from the body.

    Returns the parsed frontmatter, the body and the number of source lines the
    frontmatter block occupies (including both delimiters).
    """
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return {}, text, 0
    body = text[match.end():]
    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        logger.warning("frontmatter_parse_failed", extra={"error": str(exc)})
        data = {}
    if not isinstance(data, dict):
        data = {}
    offset = len(text.split("\n")) - len(body.split("\n"))
    return data, body, offset


def parse_markdown(text: str, source_path: str) -> ParsedDocument:
    """Parse markdown text into a ParsedDocument."""
    frontmatter, body, offset = split_frontmatter(text.replace("\r\n", "\n"))
    return ParsedDocument(
        source_path=source_path,
        raw=text.replace("\r\n", "\n"),
        body=body,
        frontmatter=frontmatter,
        frontmatter_lines=offset,
    )


def load_markdown_file(path: Path, root: Path | None = None) -> ParsedDocument:
    """Load a markdown file from disk, keyed by its path relative to root."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise MarkdownLoaderError(f"Failed to read {path}: {exc}") from exc
    source_path = path.relative_to(root).as_posix() if root else path.as_posix()
    return parse_markdown(text, source_path)


def _frontmatter_str(frontmatter: dict[str, Any], key: str) -> str | None:
    value = frontmatter.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _first_h1(body: str) -> str | None:
    in_fence = False
    for line in body.split("\n"):
        if line.lstrip().startswith(("```", "~~~")):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = _H1_RE.match(line)
        if match:
            return match.group(1).strip()
    return None


def _humanize_filename(source_path: str) -> str:
    path = Path(source_path)
    stem = path.parent.name if path.stem == "index" and path.parent.name else path.stem
    words = stem.replace("_", " ").replace("-", " ").strip()
    if not words:
        return source_path
    return words[0].upper() + words[1:]


def resolve_title(parsed: ParsedDocument) -> str:
    """Resolve a document title.

    Precedence: frontmatter ``title``, then the first level-1 heading, then the
    file name (``index.md`` uses its directory name) with separators replaced
    by spaces and the first letter capitalized.
    """
    for candidate in (
        _frontmatter_str(parsed.frontmatter, "title"),
        _first_h1(parsed.body),
    ):
        if candidate:
            return candidate
    return _humanize_filename(parsed.source_path)


def resolve_slug(parsed: ParsedDocument) -> str | None:
    """Resolve the public slug: frontmatter ``slug``, else the path without ``index.md``."""
    slug = _frontmatter_str(parsed.frontmatter, "slug")
    if slug:
        return slug.strip("/")
    path = parsed.source_path
    if path.endswith("/index.md"):
        path = path[: -len("/index.md")]
    elif path.endswith(".md"):
        path = path[: -len(".md")]
    return path.strip("/") or None


def resolve_page_type(parsed: ParsedDocument) -> str | None:
    """Resolve ``page-type`` (``page_type`` accepted), default None."""
    return _frontmatter_str(parsed.frontmatter, "page-type") or _frontmatter_str(
        parsed.frontmatter, "page_type"
    )


def resolve_sidebar(parsed: ParsedDocument) -> str | None:
    """Resolve ``sidebar``, default None."""
    return _frontmatter_str(parsed.frontmatter, "sidebar")


def build_document_record(parsed: ParsedDocument, total_chunks: int = 0) -> DocumentRecord:
    """Build a DocumentRecord from parsed markdown."""
    return DocumentRecord(
        source_path=parsed.source_path,
        title=resolve_title(parsed),
        slug=resolve_slug(parsed),
        page_type=resolve_page_type(parsed),
        sidebar=resolve_sidebar(parsed),
        total_chunks=total_chunks,
    )
