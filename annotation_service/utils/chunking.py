from typing import Iterable, Iterator, List, Sequence, Tuple, TypeVar
import math
import unicodedata

T = TypeVar("T")


def normalize_text(text: str) -> str:
    """
    Normalize text using NFC normalization to ensure stable offsets
    and handle graphemes correctly (not splitting combining characters)
    """
    return unicodedata.normalize('NFC', text)


def batched(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of at most `size` items"""
    if size <= 0:
        raise ValueError("batch size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def chunk_count(total_units: int, chunk_size: int) -> int:
    """Number of chunk invocations needed to cover a work set"""
    if chunk_size <= 0:
        raise ValueError("chunk size must be positive")
    return math.ceil(total_units / chunk_size) if total_units > 0 else 0


def plan_document_window(
    document_lengths: Sequence[int],
    document_index: int,
    word_index: int,
    chunk_size: int,
) -> Tuple[List[Tuple[int, int, int]], int, int]:
    """
    Plan the next chunk over a sequence of documents.

    Starting at (document_index, word_index), take up to `chunk_size` words,
    crossing document boundaries as needed. Returns the slices to process as
    (document_index, start_word, end_word) and the cursor after the chunk.
    Empty documents are skipped.
    """
    slices: List[Tuple[int, int, int]] = []
    remaining = chunk_size
    doc, word = document_index, word_index

    while remaining > 0 and doc < len(document_lengths):
        length = document_lengths[doc]
        if word >= length:
            doc, word = doc + 1, 0
            continue
        end = min(length, word + remaining)
        slices.append((doc, word, end))
        remaining -= end - word
        word = end
        if word >= length:
            doc, word = doc + 1, 0

    return slices, doc, word


def flatten(groups: Iterable[Iterable[T]]) -> List[T]:
    return [item for group in groups for item in group]
