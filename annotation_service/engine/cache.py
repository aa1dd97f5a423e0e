"""
Annotation cache keyed by lexical and contextual identity.

A key is the lowercased surface form plus the lowercased surface forms of the
immediately adjacent tokens. Only high-confidence annotations are written; the
first write for a key wins and later writes are no-ops, so concurrent jobs can
share entries safely. Entries never expire.
"""
from typing import Dict, Optional
import logging

from ..core.config import settings
from ..core.storage import AnnotationStorage
from ..schemas.annotation import AnnotatedToken

logger = logging.getLogger(__name__)

_KEY_SEPARATOR = "\x1f"


def cache_key(surface: str, left: str, right: str) -> str:
    return _KEY_SEPARATOR.join((surface.lower(), (left or "").lower(), (right or "").lower()))


class AnnotationCache:
    def __init__(self, storage: AnnotationStorage, threshold: Optional[float] = None):
        self.storage = storage
        self.threshold = settings.CACHE_WRITE_THRESHOLD if threshold is None else threshold

    def lookup(self, surface: str, left: str, right: str) -> Optional[AnnotatedToken]:
        """Return the stored snapshot for this context, exactly as it was written"""
        payload = self.storage.get_cache_entry(cache_key(surface, left, right))
        if payload is None:
            return None
        return AnnotatedToken.model_validate_json(payload)

    def store(self, surface: str, left: str, right: str, token: AnnotatedToken) -> bool:
        """
        Persist a token for this context. Returns True only when a new entry
        was written; low-confidence tokens and existing keys are skipped.
        """
        if token.confidence < self.threshold:
            return False
        written = self.storage.put_cache_entry(
            cache_key(surface, left, right),
            surface.lower(),
            (left or "").lower(),
            (right or "").lower(),
            token.model_dump_json(),
            token.confidence,
        )
        if written:
            logger.debug("Cached annotation for %r (%s)", surface, token.source.value)
        return written

    def stats(self) -> Dict[str, float]:
        return {
            "entries": self.storage.count_cache_entries(),
            "write_threshold": self.threshold,
        }
