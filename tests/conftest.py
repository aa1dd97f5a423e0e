import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

# Make the package importable when running the tests from a source checkout
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest
from fastapi.testclient import TestClient

from annotation_service.core.continuation import RecordingScheduler
from annotation_service.core.orchestrator import JobOrchestrator, get_orchestrator
from annotation_service.core.storage import AnnotationStorage
from annotation_service.core.watchdog import StuckJobWatchdog, get_watchdog
from annotation_service.engine.cache import AnnotationCache
from annotation_service.engine.pipeline import AnnotationPipeline
from annotation_service.engine.semantic import SemanticClassifier
from annotation_service.main import app
from annotation_service.schemas.annotation import ClassificationResult, WordToClassify


class FakeClock:
    """Settable clock so tests control idle times and throughput"""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class KeywordClassifier(SemanticClassifier):
    """Classifier that answers from a word->code table and records every batch"""

    def __init__(self, codes=None, default_code="NA"):
        super().__init__(api_url="http://classifier.test", batch_delay=0, sleep=lambda s: None)
        self.codes = codes or {}
        self.default_code = default_code
        self.batches: List[List[str]] = []

    @property
    def classified_words(self) -> List[str]:
        return [word for batch in self.batches for word in batch]

    def classify(self, words: List[WordToClassify]) -> List[ClassificationResult]:
        self.batches.append([w.word for w in words])
        return [
            ClassificationResult(
                word=w.word,
                lemma=w.lemma,
                pos=w.pos,
                domain_code=self.codes.get(w.word, self.default_code),
                confidence=0.9,
            )
            for w in words
        ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(tmp_path):
    """A fresh SQLite database per test"""
    return AnnotationStorage(db_path=str(tmp_path / "annotation.sqlite3"))


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def classifier():
    return KeywordClassifier()


@pytest.fixture
def pipeline(storage):
    return AnnotationPipeline(AnnotationCache(storage))


@pytest.fixture
def orchestrator(storage, pipeline, classifier, scheduler, clock):
    return JobOrchestrator(
        storage=storage,
        pipeline=pipeline,
        classifier=classifier,
        scheduler=scheduler,
        clock=clock,
        stall_threshold_seconds=600,
        max_auto_resume_attempts=3,
    )


@pytest.fixture
def drain(orchestrator, scheduler):
    """Run scheduled continuations the way a worker would, one chunk per call"""

    def run(max_steps: int = 1000):
        outcomes = []
        while scheduler.pending and len(outcomes) < max_steps:
            job_id, expected_offset = scheduler.pop()
            outcomes.append(orchestrator.process_next_chunk(job_id, expected_offset))
        return outcomes

    return run


@pytest.fixture
def client(orchestrator):
    """Create a test client wired to the test orchestrator"""
    watchdog = StuckJobWatchdog(orchestrator, cooldown_seconds=0)
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_watchdog] = lambda: watchdog
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def numbered_text():
    """Build a text of `n` distinct words with no multi-word expressions"""

    def build(n: int) -> str:
        return " ".join(f"palavra{i}" for i in range(n))

    return build
