"""
Layer 1: deterministic grammar annotator.

Each branch is a closed-form lookup with a fixed confidence, so the layer is
reproducible and needs no training. Tokens it cannot resolve come back as
UNKNOWN with confidence 0.0 and are escalated by the pipeline.
"""
from typing import Dict, List, Optional, Tuple, Union
import logging

from ..schemas.annotation import AnnotatedToken, AnnotationSource, SurfaceToken, CoverageReport
from .cache import AnnotationCache
from .lexicon import GrammarLexicon, get_grammar_lexicon

logger = logging.getLogger(__name__)

UNKNOWN_POS = "UNKNOWN"

CLOSED_SET_CONFIDENCE = 1.0
TEMPLATE_MWE_CONFIDENCE = 0.9
COVERAGE_MIN_CONFIDENCE = 0.8


def infer_verb_features(form: str) -> Dict[str, str]:
    """Tense/mood guess from the ending of a conjugated form"""
    if form.endswith("ndo"):
        return {"tense": "Pres", "mood": "Ger"}
    if form.endswith("do") or form.endswith("to"):
        return {"tense": "Past", "mood": "Part"}
    if form.endswith("va") or form.endswith("vam"):
        return {"tense": "Imp", "mood": "Ind"}
    return {}


class GrammarAnnotator:
    def __init__(self, lexicon: Optional[GrammarLexicon] = None, cache: Optional[AnnotationCache] = None):
        self.lexicon = lexicon or get_grammar_lexicon()
        self.cache = cache

    def annotate(
        self,
        token: Union[SurfaceToken, str],
        left: str = "",
        right: str = "",
    ) -> Tuple[AnnotatedToken, bool]:
        """
        Annotate one token. Returns the annotation and whether this layer
        resolved it; resolved tokens at or above the cache threshold are
        handed to the cache.
        """
        if isinstance(token, SurfaceToken):
            annotated = self._resolve(token.surface, token)
            annotated = annotated.model_copy(update={"position": token.position})
        else:
            annotated = self._resolve(token, None)

        if self.cache is not None and annotated.resolved:
            self.cache.store(annotated.surface, left, right, annotated)

        return annotated, annotated.resolved

    def _build(self, surface: str, lemma: str, pos: str, pos_detailed: str,
               confidence: float, features: Optional[Dict[str, str]] = None) -> AnnotatedToken:
        return AnnotatedToken(
            surface=surface,
            lemma=lemma,
            pos=pos,
            pos_detailed=pos_detailed,
            features=features or {},
            source=AnnotationSource.rule_grammar,
            confidence=confidence,
        )

    def _resolve(self, surface: str, token: Optional[SurfaceToken]) -> AnnotatedToken:
        lower = surface.lower()
        lex = self.lexicon

        if token is not None and token.mwe is not None:
            mwe = token.mwe
            confidence = CLOSED_SET_CONFIDENCE if mwe.fixed else TEMPLATE_MWE_CONFIDENCE
            return self._build(surface, mwe.lemma, mwe.pos, "MWE", confidence)

        infinitive = lex.conjugations.get(lower)
        if infinitive:
            detailed = "AUX" if infinitive in lex.auxiliary_verbs else "VERB"
            return self._build(surface, infinitive, "VERB", detailed, CLOSED_SET_CONFIDENCE,
                               infer_verb_features(lower))

        pronoun_tag = lex.pronouns.get(lower)
        if pronoun_tag:
            return self._build(surface, lower, "PRON", pronoun_tag, CLOSED_SET_CONFIDENCE)

        if lower in lex.determiners:
            return self._build(surface, lower, "DET", "ART", CLOSED_SET_CONFIDENCE,
                               lex.determiners[lower])

        if lower in lex.prepositions:
            return self._build(surface, lower, "ADP", "PREP", CLOSED_SET_CONFIDENCE)

        if lower in lex.conjunctions:
            return self._build(surface, lower, "CCONJ", "CONJ", CLOSED_SET_CONFIDENCE)

        if lower in lex.adverbs:
            return self._build(surface, lower, "ADV", "ADV", CLOSED_SET_CONFIDENCE)

        for rule in lex.suffix_rules:
            suffix = rule["suffix"]
            if lower.endswith(suffix) and len(lower) > len(suffix):
                lemma = lower[: -len(suffix)] if rule.get("strip_suffix") else lower
                return self._build(
                    surface,
                    lemma,
                    rule["pos"],
                    rule.get("pos_detailed", rule["pos"]),
                    float(rule["confidence"]),
                    rule.get("features"),
                )

        return self._build(surface, lower, UNKNOWN_POS, UNKNOWN_POS, 0.0)

    def annotate_sequence(self, tokens: List[SurfaceToken]) -> List[AnnotatedToken]:
        """Annotate a token sequence, using each token's neighbours as context"""
        results = []
        for i, token in enumerate(tokens):
            left = tokens[i - 1].surface if i > 0 else ""
            right = tokens[i + 1].surface if i + 1 < len(tokens) else ""
            annotated, _ = self.annotate(token, left, right)
            results.append(annotated)
        return results


def coverage(tokens: List[AnnotatedToken]) -> CoverageReport:
    """How much of a sequence the grammar layer covered on its own"""
    total = len(tokens)
    covered = sum(
        1 for t in tokens
        if t.source == AnnotationSource.rule_grammar and t.confidence > COVERAGE_MIN_CONFIDENCE
    )
    unknown = list(dict.fromkeys(t.surface for t in tokens if t.pos == UNKNOWN_POS))

    distribution: Dict[str, int] = {}
    for t in tokens:
        distribution[t.source.value] = distribution.get(t.source.value, 0) + 1

    return CoverageReport(
        total_tokens=total,
        covered_by_grammar=covered,
        coverage_rate=(covered / total) * 100 if total else 0.0,
        unknown_words=unknown,
        source_distribution=distribution,
    )
