# processing/text_chunking.py
"""Split manuscript text into ordered, bounded chunks.

Structural headings (chapters, numbered or roman-numeral sections) are
preferred as boundaries. When the manuscript has no reliable structure the
text is cut at blank-line paragraph boundaries and paragraphs are packed
greedily up to ``max_words_per_chunk``.
"""

from __future__ import annotations

import re
from collections.abc import Sequence

import structlog
from config import settings

from models import Chunk, ChunkingOptions, ChunkType

logger = structlog.get_logger(__name__)

_NUMBER_WORDS = (
    "one|two|three|four|five|six|seven|eight|nine|ten|eleven|twelve|"
    "thirteen|fourteen|fifteen|sixteen|seventeen|eighteen|nineteen|twenty"
)

# Tried in order; the first family with enough matches wins.
HEADING_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "chapter",
        re.compile(
            r"^[ \t]*(?:chapter|kapitel|chapitre|cap[ií]tulo)[ \t]+"
            rf"(?:\d+|[ivxlc]+|{_NUMBER_WORDS})\b[^\n]*$",
            re.IGNORECASE | re.MULTILINE,
        ),
    ),
    ("numbered", re.compile(r"^[ \t]*\d{1,3}\.[ \t]+[A-Z][^\n]*$", re.MULTILINE)),
    ("roman", re.compile(r"^[ \t]*[IVXLC]+\.[ \t]+[A-Z][^\n]*$", re.MULTILINE)),
)

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")


def count_words(text: str) -> int:
    """Whitespace-delimited token count."""
    return len(text.split())


def _reindex(chunks: Sequence[Chunk]) -> list[Chunk]:
    return [
        chunk.model_copy(update={"index": i, "word_count": count_words(chunk.content)})
        for i, chunk in enumerate(chunks)
    ]


def _structured_chunking(text: str, options: ChunkingOptions) -> list[Chunk]:
    for family, pattern in HEADING_PATTERNS:
        matches = list(pattern.finditer(text))
        if len(matches) < settings.MIN_STRUCTURAL_HEADINGS:
            continue

        chunks: list[Chunk] = []
        for i, match in enumerate(matches):
            end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
            section = text[match.start() : end].strip()
            word_count = count_words(section)
            if word_count < options.min_words_per_chunk:
                logger.debug(
                    "Discarding undersized structural section",
                    heading=match.group(0).strip(),
                    word_count=word_count,
                )
                continue
            chunks.append(
                Chunk(
                    content=section,
                    chunk_type=ChunkType.CHAPTER,
                    title=match.group(0).strip(),
                    index=len(chunks),
                    word_count=word_count,
                )
            )

        if chunks:
            logger.debug(
                "Structural headings detected",
                family=family,
                headings=len(matches),
                kept=len(chunks),
            )
            return chunks
    return []


def _split_paragraphs(text: str) -> list[str]:
    paragraphs = (p.strip() for p in _PARAGRAPH_SPLIT.split(text))
    return [p for p in paragraphs if len(p) > settings.MIN_PARAGRAPH_CHARS]


def _semantic_chunking(text: str, options: ChunkingOptions) -> list[Chunk]:
    chunks: list[Chunk] = []
    buffer: list[str] = []
    buffer_words = 0

    def flush() -> None:
        content = "\n\n".join(buffer).strip()
        chunks.append(
            Chunk(
                content=content,
                chunk_type=ChunkType.PARAGRAPH,
                index=len(chunks),
                word_count=count_words(content),
            )
        )

    for paragraph in _split_paragraphs(text):
        paragraph_words = count_words(paragraph)
        if (
            buffer_words + paragraph_words > options.max_words_per_chunk
            and buffer_words >= options.min_words_per_chunk
        ):
            flush()
            buffer = [paragraph]
            buffer_words = paragraph_words
        else:
            buffer.append(paragraph)
            buffer_words += paragraph_words

    if buffer and buffer_words >= options.min_words_per_chunk:
        flush()
    return chunks


class TextChunker:
    """Structure-aware manuscript splitter."""

    @staticmethod
    def default_options() -> ChunkingOptions:
        return ChunkingOptions(
            max_words_per_chunk=settings.MAX_WORDS_PER_CHUNK,
            min_words_per_chunk=settings.MIN_WORDS_PER_CHUNK,
            preserve_structure=settings.PRESERVE_STRUCTURE,
        )

    @classmethod
    def create_chunks(
        cls, text: str, options: ChunkingOptions | None = None
    ) -> list[Chunk]:
        """Return the manuscript as an ordered list of chunks.

        Non-blank input always yields at least one chunk: if neither the
        structural nor the paragraph pass keeps anything, the whole text
        becomes a single ``automatic`` chunk.
        """
        opts = options or cls.default_options()
        if not text or not text.strip():
            return []

        if opts.preserve_structure:
            structured = _structured_chunking(text, opts)
            if len(structured) > 1:
                logger.info(
                    "Using structured chunking based on detected headings",
                    chunks=len(structured),
                )
                return _reindex(structured)

        chunks = _semantic_chunking(text, opts)
        if chunks:
            logger.info("Using semantic paragraph-based chunking", chunks=len(chunks))
            return _reindex(chunks)

        stripped = text.strip()
        logger.info(
            "Text too short for paragraph chunking; using a single automatic chunk",
            words=count_words(stripped),
        )
        return [
            Chunk(
                content=stripped,
                chunk_type=ChunkType.AUTOMATIC,
                index=0,
                word_count=count_words(stripped),
            )
        ]

    @staticmethod
    def get_chunking_summary(chunks: Sequence[Chunk]) -> str:
        """Human-readable digest of a chunk list."""
        if not chunks:
            return "No chunks produced"

        total_words = sum(chunk.word_count for chunk in chunks)
        avg_words = round(total_words / len(chunks))
        by_type = {
            chunk_type: sum(1 for c in chunks if c.chunk_type == chunk_type)
            for chunk_type in ChunkType
        }

        summary = f"Text split into {len(chunks)} chunks (avg {avg_words} words/chunk)"
        if by_type[ChunkType.CHAPTER]:
            summary += f". Structure detected: {by_type[ChunkType.CHAPTER]} chapters"
        elif by_type[ChunkType.SECTION]:
            summary += f". Structure detected: {by_type[ChunkType.SECTION]} sections"
        elif by_type[ChunkType.PARAGRAPH]:
            summary += ". Semantic split by paragraphs"
        else:
            summary += ". Automatic split"
        return summary
