from pydantic import BaseModel, ConfigDict, Field
from typing import List, Dict, Optional
from enum import Enum


class AnnotationSource(str, Enum):
    rule_grammar = "rule_grammar"
    external_service = "external_service"
    llm_batch = "llm_batch"
    cache = "cache"


class MWESpan(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    start: int
    end: int
    lemma: str
    pos: str
    fixed: bool = True


class SurfaceToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    surface: str
    position: int
    start: int
    end: int
    mwe: Optional[MWESpan] = None


class Token(BaseModel):
    model_config = ConfigDict(frozen=True)

    surface: str
    lemma: str
    pos: str
    pos_detailed: str
    features: Dict[str, str] = Field(default_factory=dict)
    position: int = 0


class AnnotatedToken(Token):
    source: AnnotationSource
    confidence: float = Field(ge=0.0, le=1.0)
    domain_code: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.pos != "UNKNOWN" and self.confidence > 0.0


class WordToClassify(BaseModel):
    word: str
    lemma: Optional[str] = None
    pos: Optional[str] = None


class ClassificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    word: str
    lemma: Optional[str] = None
    pos: Optional[str] = None
    domain_code: str
    alternate_codes: List[str] = Field(default_factory=list)
    is_polysemous: bool = False
    confidence: float = Field(ge=0.0, le=1.0)
    source: str = "llm_batch"


class TokenizeRequest(BaseModel):
    text: str


class TokenizeResponse(BaseModel):
    tokens: List[SurfaceToken]
    mwes: List[MWESpan]


class AnnotationRequest(BaseModel):
    text: str
    classify: Optional[bool] = False


class CoverageReport(BaseModel):
    total_tokens: int
    covered_by_grammar: int
    coverage_rate: float
    unknown_words: List[str]
    source_distribution: Dict[str, int]


class AnnotationResponse(BaseModel):
    tokens: List[AnnotatedToken]
    coverage: CoverageReport


class ClassifyRequest(BaseModel):
    words: List[WordToClassify]


class ClassifyResponse(BaseModel):
    classifications: List[ClassificationResult]
