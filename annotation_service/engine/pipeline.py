"""
Layered annotation pipeline.

Each token goes through the cheapest source that can answer it: the cache,
then the grammar layer, then (as one batch per call) the external NLP
service. Semantic domains are assigned afterwards, from existing
classifications where possible and from the batch classifier otherwise.
"""
from typing import Dict, List, Optional, Tuple
import logging

from ..core.storage import AnnotationStorage
from ..schemas.annotation import (
    AnnotatedToken, AnnotationSource, ClassificationResult, SurfaceToken, WordToClassify,
)
from .cache import AnnotationCache
from .external import ExternalAnnotator
from .grammar import GrammarAnnotator
from .semantic import SemanticClassifier, is_function_word
from .tokenizer import neighbor_context, tokenize

logger = logging.getLogger(__name__)


class AnnotationPipeline:
    def __init__(
        self,
        cache: AnnotationCache,
        grammar: Optional[GrammarAnnotator] = None,
        external: Optional[ExternalAnnotator] = None,
    ):
        self.cache = cache
        self.grammar = grammar or GrammarAnnotator(cache=cache)
        self.external = external

    def annotate(self, text: str) -> List[AnnotatedToken]:
        tokens = tokenize(text)
        return self.annotate_window(tokens, 0, len(tokens), text)

    def annotate_window(
        self, tokens: List[SurfaceToken], start: int, end: int, full_text: str
    ) -> List[AnnotatedToken]:
        """
        Annotate tokens[start:end]. Context comes from the full sequence, so a
        window at a chunk boundary produces the same cache keys as a full pass.
        """
        results: List[AnnotatedToken] = []
        contexts: List[Tuple[str, str]] = []
        unresolved: List[int] = []

        for i in range(start, end):
            token = tokens[i]
            left, right = neighbor_context(tokens, i)
            contexts.append((left, right))

            cached = self.cache.lookup(token.surface, left, right)
            if cached is not None:
                results.append(cached.model_copy(update={
                    "surface": token.surface,
                    "position": token.position,
                    "source": AnnotationSource.cache,
                }))
                continue

            annotated, confident = self.grammar.annotate(token, left, right)
            results.append(annotated)
            if not confident:
                unresolved.append(len(results) - 1)

        if unresolved and self.external is not None:
            batch = [results[i] for i in unresolved]
            for i, annotated in zip(unresolved, self.external.annotate(batch, full_text)):
                results[i] = annotated
                if annotated.source == AnnotationSource.external_service:
                    left, right = contexts[i]
                    self.cache.store(annotated.surface, left, right, annotated)

        return results


def assign_domains(
    tokens: List[AnnotatedToken],
    storage: AnnotationStorage,
    classifier: SemanticClassifier,
    collection_id: Optional[str] = None,
) -> Tuple[List[AnnotatedToken], int, int]:
    """
    Attach a semantic-domain code to every token.

    Function words get the grammatical-marker code. Content words reuse an
    existing classification when there is one; the rest are classified once
    per distinct word and stored. Returns the tokens plus the number that
    needed a fresh classification and the number served from known results.
    Tokens no POS layer resolved take the source and confidence of their
    LLM classification.
    """
    content_words: Dict[str, WordToClassify] = {}
    for t in tokens:
        if not is_function_word(t.pos, t.pos_detailed):
            key = t.surface.lower()
            content_words.setdefault(key, WordToClassify(word=key, lemma=t.lemma, pos=t.pos))

    known = storage.get_classifications(content_words)
    missing = [w for key, w in content_words.items() if key not in known]

    fresh: Dict[str, ClassificationResult] = {}
    if missing:
        for result in classifier.classify_all(missing):
            storage.insert_classification(result, collection_id)
            fresh[result.word] = result
        logger.info("Classified %d new words (%d already known)", len(fresh), len(known))

    marker = classifier.taxonomy.grammatical_marker
    out: List[AnnotatedToken] = []
    new_units = cached_units = 0
    for t in tokens:
        key = t.surface.lower()
        if is_function_word(t.pos, t.pos_detailed):
            out.append(t.model_copy(update={"domain_code": marker}))
            cached_units += 1
            continue

        if key in fresh:
            result = fresh[key]
            new_units += 1
        else:
            result = known[key]
            cached_units += 1

        update = {"domain_code": result.domain_code}
        # an unresolved token is reported as produced by the classifier
        if not t.resolved and result.source == AnnotationSource.llm_batch.value:
            update.update(source=AnnotationSource.llm_batch, confidence=result.confidence)
        out.append(t.model_copy(update=update))

    return out, new_units, cached_units
