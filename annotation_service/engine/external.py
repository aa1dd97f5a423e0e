"""
Layer 2: external NLP fallback annotator.

Only tokens the grammar layer could not resolve are sent here. The service is
optional: when it is unconfigured, unhealthy, slow or returns garbage, the
input batch comes back unchanged and the pipeline carries on.
"""
from typing import Any, Callable, Dict, List, Optional
import time
import logging

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.config import settings
from ..schemas.annotation import AnnotatedToken, AnnotationSource

logger = logging.getLogger(__name__)


class _ServiceAnnotation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    lemma: Optional[str] = None
    pos: Optional[str] = None
    pos_detailed: Optional[str] = Field(default=None, alias="posDetailed")
    features: Optional[Dict[str, Any]] = None
    confidence: float = 0.0


class _ServiceReply(BaseModel):
    annotations: List[_ServiceAnnotation]


class ExternalAnnotator:
    def __init__(
        self,
        base_url: Optional[str] = None,
        health_timeout: Optional[float] = None,
        request_timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        url = base_url if base_url is not None else settings.NLP_SERVICE_URL
        self.base_url = url.rstrip("/") if url else None
        self.health_timeout = health_timeout if health_timeout is not None else settings.NLP_HEALTH_TIMEOUT_SECONDS
        self.request_timeout = request_timeout if request_timeout is not None else settings.NLP_REQUEST_TIMEOUT_SECONDS
        self.retry_attempts = retry_attempts if retry_attempts is not None else settings.NLP_RETRY_ATTEMPTS
        self.retry_backoff = retry_backoff if retry_backoff is not None else settings.NLP_RETRY_BACKOFF_SECONDS
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def check_health(self) -> Dict[str, Any]:
        """Probe the service; never raises"""
        if not self.configured:
            return {"healthy": False, "error": "NLP service URL not configured"}

        started = time.monotonic()
        try:
            response = requests.get(f"{self.base_url}/health", timeout=self.health_timeout)
            response.raise_for_status()
            data = response.json()
        except requests.Timeout:
            return {"healthy": False, "error": "timeout", "response_time": time.monotonic() - started}
        except (requests.RequestException, ValueError) as e:
            return {"healthy": False, "error": str(e), "response_time": time.monotonic() - started}

        return {
            "healthy": isinstance(data, dict) and data.get("status") == "healthy",
            "model": data.get("model") if isinstance(data, dict) else None,
            "response_time": time.monotonic() - started,
        }

    def annotate(self, tokens: List[AnnotatedToken], full_text: str) -> List[AnnotatedToken]:
        """
        Re-annotate a batch of unresolved tokens. The result always has the
        same length and order as the input.
        """
        if not tokens:
            return []

        if not self.configured:
            logger.debug("NLP service not configured, skipping external annotation")
            return list(tokens)

        health = self.check_health()
        if not health["healthy"]:
            logger.warning("NLP service unhealthy (%s), skipping external annotation", health.get("error"))
            return list(tokens)

        payload = {"tokens": [t.surface for t in tokens], "fullText": full_text}
        attempts = self.retry_attempts + 1
        for attempt in range(1, attempts + 1):
            try:
                response = requests.post(
                    f"{self.base_url}/annotate", json=payload, timeout=self.request_timeout
                )
                response.raise_for_status()
                annotated = self._merge(tokens, response.json())
                logger.info(
                    "External annotation covered %d/%d tokens",
                    sum(1 for t in annotated if t.resolved), len(annotated),
                )
                return annotated
            except requests.Timeout:
                logger.warning("NLP service timed out (attempt %d/%d)", attempt, attempts)
            except (requests.RequestException, ValueError, ValidationError) as e:
                logger.warning("NLP service call failed (attempt %d/%d): %s", attempt, attempts, e)

            if attempt < attempts:
                self._sleep(self.retry_backoff)

        logger.warning("External annotation failed after %d attempts, keeping grammar results", attempts)
        return list(tokens)

    def _merge(self, tokens: List[AnnotatedToken], data: Any) -> List[AnnotatedToken]:
        annotations = _ServiceReply.model_validate(data).annotations
        if len(annotations) != len(tokens):
            raise ValueError(f"expected {len(tokens)} annotations, got {len(annotations)}")

        merged = []
        for token, ann in zip(tokens, annotations):
            merged.append(AnnotatedToken(
                surface=token.surface,
                lemma=ann.lemma or token.lemma,
                pos=ann.pos or token.pos,
                pos_detailed=ann.pos_detailed or ann.pos or token.pos_detailed,
                features={str(k): str(v) for k, v in (ann.features or {}).items()},
                position=token.position,
                source=AnnotationSource.external_service,
                confidence=min(1.0, max(0.0, ann.confidence)),
            ))
        return merged
