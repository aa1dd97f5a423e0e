"""
Layer 3: semantic-domain batch classifier backed by a chat-completion endpoint.

The prompt embeds the closed taxonomy and a numbered word list; the reply must
be a JSON object with a `classifications` array in input order. Replies may be
wrapped in markdown code fences. Anything that cannot be parsed and validated
turns the whole batch into sentinel results instead of failing the caller.
"""
from typing import Callable, Iterable, List, Optional
import json
import time
import logging

import requests
from pydantic import BaseModel, Field, ValidationError

from ..core.config import settings
from ..schemas.annotation import ClassificationResult, WordToClassify
from ..utils.chunking import batched
from .taxonomy import Taxonomy, get_taxonomy

logger = logging.getLogger(__name__)

FUNCTION_WORD_POS = {"DET", "ADP", "CCONJ", "SCONJ", "PRON", "AUX"}

SYSTEM_PROMPT = """You are a semantic classification expert for a corpus of Brazilian Portuguese song lyrics.
Assign each word to the most appropriate semantic domain using ONLY the codes provided.

POLYSEMY:
- If a word has several senses (e.g. "manga", "banco", "vela"), identify every plausible domain
- "domain_code" must be the most likely domain IN CONTEXT
- "alternate_codes" lists the other plausible domains (array)
- "is_polysemous" is true when there are several senses

Return ONLY valid JSON in this format, one entry per word, in the order given:
{
  "classifications": [
    {
      "word": "banco",
      "domain_code": "OA",
      "alternate_codes": ["AP", "EL"],
      "is_polysemous": true,
      "confidence": 0.85
    }
  ]
}"""


class _ReplyItem(BaseModel):
    word: str
    domain_code: str
    alternate_codes: List[str] = Field(default_factory=list)
    is_polysemous: bool = False
    confidence: float


class _Reply(BaseModel):
    classifications: List[_ReplyItem]


def clean_json_response(content: str) -> str:
    """Strip ```json / ``` fences around a model reply"""
    cleaned = content.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def is_function_word(pos: Optional[str], pos_detailed: Optional[str] = None) -> bool:
    return (pos or "") in FUNCTION_WORD_POS or (pos_detailed or "") in FUNCTION_WORD_POS


def build_user_prompt(words: List[WordToClassify], taxonomy: Taxonomy) -> str:
    lines = []
    for i, w in enumerate(words, start=1):
        line = f"{i}. {w.word}"
        if w.lemma:
            line += f" (lemma: {w.lemma})"
        if w.pos:
            line += f" [{w.pos}]"
        lines.append(line)

    return (
        "Classify the following words into semantic domains.\n\n"
        f"{taxonomy.describe()}\n\n"
        "Use SB or SB.05 for veterinary terms (animal diseases, vaccines, castration).\n\n"
        "WORDS:\n"
        + "\n".join(lines)
        + "\n\nReturn valid JSON with one classification per word."
    )


class SemanticClassifier:
    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        taxonomy: Optional[Taxonomy] = None,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        fallback_confidence: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_url = api_url if api_url is not None else settings.CLASSIFIER_API_URL
        self.api_key = api_key if api_key is not None else settings.CLASSIFIER_API_KEY
        self.model = model or settings.CLASSIFIER_MODEL
        self.taxonomy = taxonomy or get_taxonomy()
        self.batch_size = batch_size or settings.SEMANTIC_BATCH_SIZE
        self.batch_delay = settings.SEMANTIC_BATCH_DELAY_SECONDS if batch_delay is None else batch_delay
        self.fallback_confidence = (
            settings.FALLBACK_CONFIDENCE if fallback_confidence is None else fallback_confidence
        )
        self._sleep = sleep

    def fallback(self, words: Iterable[WordToClassify]) -> List[ClassificationResult]:
        return [
            ClassificationResult(
                word=w.word,
                lemma=w.lemma,
                pos=w.pos,
                domain_code=self.taxonomy.sentinel,
                confidence=self.fallback_confidence,
                source="fallback",
            )
            for w in words
        ]

    def grammatical_marker(self, word: WordToClassify) -> ClassificationResult:
        return ClassificationResult(
            word=word.word,
            lemma=word.lemma,
            pos=word.pos,
            domain_code=self.taxonomy.grammatical_marker,
            confidence=1.0,
            source="rule_grammar",
        )

    def classify(self, words: List[WordToClassify]) -> List[ClassificationResult]:
        """
        Classify one batch. Always returns exactly one result per input word,
        in input order; never raises.
        """
        if not words:
            return []

        if not self.api_url:
            logger.warning("Classifier endpoint not configured, using fallback for %d words", len(words))
            return self.fallback(words)

        try:
            content = self._request(words)
            return self.parse_response(content, words)
        except (requests.RequestException, ValueError, KeyError, IndexError, TypeError, ValidationError) as e:
            logger.error("Batch classification failed for %d words: %s", len(words), e)
            return self.fallback(words)

    def _request(self, words: List[WordToClassify]) -> str:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        response = requests.post(
            self.api_url,
            headers=headers,
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_user_prompt(words, self.taxonomy)},
                ],
                "temperature": settings.CLASSIFIER_TEMPERATURE,
                "max_tokens": settings.CLASSIFIER_MAX_TOKENS,
            },
            timeout=settings.CLASSIFIER_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        content = response.json()["choices"][0]["message"]["content"]
        if not isinstance(content, str):
            raise ValueError(f"unexpected content type from classifier: {type(content).__name__}")
        if not content.strip():
            raise ValueError("empty response from classifier")
        return content

    def parse_response(self, content: str, words: List[WordToClassify]) -> List[ClassificationResult]:
        """
        Validate a raw reply against the batch. Raises ValueError or
        ValidationError on anything malformed; the caller falls back.
        """
        reply = _Reply.model_validate(json.loads(clean_json_response(content)))
        if len(reply.classifications) != len(words):
            raise ValueError(f"expected {len(words)} classifications, got {len(reply.classifications)}")

        results = []
        for w, item in zip(words, reply.classifications):
            code = self.taxonomy.normalize(item.domain_code)
            if code != item.domain_code.strip().upper():
                logger.warning("Unknown domain code %r for %r, using %s", item.domain_code, w.word, code)

            alternates = []
            for alt in item.alternate_codes:
                alt = alt.strip().upper()
                if self.taxonomy.is_valid(alt) and alt != code and alt not in alternates:
                    alternates.append(alt)

            results.append(ClassificationResult(
                word=w.word,
                lemma=w.lemma,
                pos=w.pos,
                domain_code=code,
                alternate_codes=alternates,
                is_polysemous=item.is_polysemous or bool(alternates),
                confidence=min(1.0, max(0.0, item.confidence)),
                source="llm_batch",
            ))
        return results

    def classify_all(self, words: List[WordToClassify]) -> List[ClassificationResult]:
        """Classify any number of words in fixed-size batches with a pause between batches"""
        results: List[ClassificationResult] = []
        for i, batch in enumerate(batched(words, self.batch_size)):
            if i > 0 and self.batch_delay > 0:
                self._sleep(self.batch_delay)
            results.extend(self.classify(batch))
        return results
