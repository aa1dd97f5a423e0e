from fastapi import APIRouter, HTTPException, Depends
from ...schemas.annotation import (
    AnnotationRequest,
    AnnotationResponse,
    ClassifyRequest,
    ClassifyResponse,
    TokenizeRequest,
    TokenizeResponse,
)
from ...core.orchestrator import JobOrchestrator, get_orchestrator
from ...engine.grammar import coverage
from ...engine.pipeline import assign_domains
from ...engine.tokenizer import detect_mwes, tokenize
from ...utils.chunking import normalize_text
import logging

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_CLASSIFY_WORDS = 200


@router.post("/tokenize", response_model=TokenizeResponse)
def tokenize_text(request: TokenizeRequest) -> TokenizeResponse:
    """
    Split text into tokens, keeping multi-word expressions as single tokens
    """
    return TokenizeResponse(
        tokens=tokenize(request.text),
        mwes=detect_mwes(normalize_text(request.text)),
    )


@router.post("/annotate", response_model=AnnotationResponse)
def annotate_text(
    request: AnnotationRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> AnnotationResponse:
    """
    Annotate a short text synchronously (cache, grammar, external NLP).
    For whole collections, submit a job instead.
    """
    tokens = orchestrator.pipeline.annotate(request.text)
    if request.classify:
        tokens, _, _ = assign_domains(tokens, orchestrator.storage, orchestrator.classifier)
    return AnnotationResponse(tokens=tokens, coverage=coverage(tokens))


@router.post("/classify", response_model=ClassifyResponse)
def classify_words(
    request: ClassifyRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> ClassifyResponse:
    """
    Classify words into semantic domains without storing the results
    """
    if len(request.words) > MAX_CLASSIFY_WORDS:
        raise HTTPException(status_code=422, detail=f"At most {MAX_CLASSIFY_WORDS} words per request")
    return ClassifyResponse(classifications=orchestrator.classifier.classify_all(request.words))


@router.get("/cache/stats")
def cache_stats(orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    return orchestrator.pipeline.cache.stats()
