"""
Tokenizer that keeps multi-word expressions (MWEs) atomic.

MWE spans are detected on the raw text first; the text between spans is split
into word tokens and each span is emitted as a single token in its original
place. The output depends only on the input text and the MWE tables, so cache
keys and resume cursors built on token positions stay stable across runs.
"""
from typing import List, Optional, Tuple
import re

from ..schemas.annotation import MWESpan, SurfaceToken
from ..utils.chunking import normalize_text
from .lexicon import MWEPatterns, get_mwe_patterns

# words, with internal hyphens/apostrophes ("bem-te-vi", "d'água")
WORD_RE = re.compile(r"\w+(?:[-'’]\w+)*")


def detect_mwes(text: str, patterns: Optional[MWEPatterns] = None) -> List[MWESpan]:
    """
    Find non-overlapping MWE spans sorted by start offset.
    Overlapping candidates are resolved longest-match-first; on equal length
    the earlier span wins, then fixed expressions over templates.
    """
    patterns = patterns or get_mwe_patterns()
    candidates: List[MWESpan] = []

    for expression, entry, regex in patterns.fixed:
        for match in regex.finditer(text):
            candidates.append(MWESpan(
                text=match.group(0),
                start=match.start(),
                end=match.end(),
                lemma=entry.get("lemma", expression),
                pos=entry.get("pos", "NOUN"),
                fixed=True,
            ))

    for _name, pos, regex in patterns.templates:
        for match in regex.finditer(text):
            candidates.append(MWESpan(
                text=match.group(0),
                start=match.start(),
                end=match.end(),
                lemma=match.group(0).lower(),
                pos=pos,
                fixed=False,
            ))

    candidates.sort(key=lambda s: (-(s.end - s.start), s.start, not s.fixed))

    accepted: List[MWESpan] = []
    for span in candidates:
        if any(span.start < kept.end and kept.start < span.end for kept in accepted):
            continue
        accepted.append(span)

    return sorted(accepted, key=lambda s: s.start)


def _split_words(text: str, offset: int) -> List[Tuple[str, int, int]]:
    return [(m.group(0), offset + m.start(), offset + m.end()) for m in WORD_RE.finditer(text)]


def tokenize(text: str, patterns: Optional[MWEPatterns] = None) -> List[SurfaceToken]:
    """Split text into surface tokens, one slot per detected MWE"""
    normalized = normalize_text(text)
    spans = detect_mwes(normalized, patterns)

    pieces: List[Tuple[str, int, int, Optional[MWESpan]]] = []
    current = 0
    for span in spans:
        pieces.extend((w, s, e, None) for w, s, e in _split_words(normalized[current:span.start], current))
        pieces.append((span.text, span.start, span.end, span))
        current = span.end
    pieces.extend((w, s, e, None) for w, s, e in _split_words(normalized[current:], current))

    return [
        SurfaceToken(surface=surface, position=i, start=start, end=end, mwe=mwe)
        for i, (surface, start, end, mwe) in enumerate(pieces)
    ]


def neighbor_context(tokens: List[SurfaceToken], index: int) -> Tuple[str, str]:
    """Surface forms immediately left and right of a token ('' at the edges)"""
    left = tokens[index - 1].surface if index > 0 else ""
    right = tokens[index + 1].surface if index + 1 < len(tokens) else ""
    return left, right
