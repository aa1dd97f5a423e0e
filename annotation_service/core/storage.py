from pathlib import Path
from typing import Dict, List, Optional, Any, Iterable
from datetime import datetime, timezone
from contextlib import contextmanager
from ..schemas.annotation import AnnotatedToken, ClassificationResult
from ..schemas.job import Job, Cursor, JobStatus
from ..core.config import settings
import json
import sqlite3
import threading
import uuid
import logging

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    status TEXT NOT NULL,
    collection_id TEXT,
    params TEXT NOT NULL,
    total_units INTEGER NOT NULL,
    processed_units INTEGER NOT NULL,
    new_units INTEGER NOT NULL,
    cached_units INTEGER NOT NULL,
    chunk_size INTEGER NOT NULL,
    chunks_processed INTEGER NOT NULL,
    cursor_offset INTEGER NOT NULL,
    cursor_document INTEGER NOT NULL,
    cursor_word INTEGER NOT NULL,
    requested_action TEXT,
    claim_token TEXT,
    resuming_since TEXT,
    auto_resume_attempts INTEGER NOT NULL DEFAULT 0,
    last_auto_resume_at TEXT,
    last_activity_at TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT,
    error_message TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);

CREATE TABLE IF NOT EXISTS job_documents (
    job_id TEXT NOT NULL,
    doc_index INTEGER NOT NULL,
    doc_id TEXT,
    title TEXT,
    text TEXT NOT NULL,
    token_count INTEGER NOT NULL,
    PRIMARY KEY(job_id, doc_index)
);

CREATE TABLE IF NOT EXISTS work_items (
    job_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    word TEXT NOT NULL,
    lemma TEXT,
    pos TEXT,
    previous_code TEXT,
    PRIMARY KEY(job_id, position)
);

CREATE TABLE IF NOT EXISTS annotation_cache (
    cache_key TEXT PRIMARY KEY,
    entry_id TEXT NOT NULL,
    surface TEXT NOT NULL,
    left_context TEXT NOT NULL,
    right_context TEXT NOT NULL,
    token_json TEXT NOT NULL,
    confidence REAL NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS classifications (
    word TEXT PRIMARY KEY,
    entry_id TEXT NOT NULL,
    lemma TEXT,
    pos TEXT,
    domain_code TEXT NOT NULL,
    alternate_codes TEXT NOT NULL,
    is_polysemous INTEGER NOT NULL,
    confidence REAL NOT NULL,
    source TEXT NOT NULL,
    collection_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_classifications_code ON classifications(domain_code);

CREATE TABLE IF NOT EXISTS annotated_tokens (
    job_id TEXT NOT NULL,
    doc_index INTEGER NOT NULL,
    position INTEGER NOT NULL,
    surface TEXT NOT NULL,
    token_json TEXT NOT NULL,
    domain_code TEXT,
    PRIMARY KEY(job_id, doc_index, position)
);
"""

_JOB_COLUMNS = [
    "id", "kind", "status", "collection_id", "params", "total_units", "processed_units",
    "new_units", "cached_units", "chunk_size", "chunks_processed", "cursor_offset",
    "cursor_document", "cursor_word", "requested_action", "claim_token", "resuming_since",
    "auto_resume_attempts", "last_auto_resume_at", "last_activity_at", "created_at",
    "started_at", "finished_at", "error_message",
]

_TIME_FIELDS = {
    "resuming_since", "last_auto_resume_at", "last_activity_at", "created_at", "started_at", "finished_at",
}


def _encode_value(field: str, value: Any) -> Any:
    if field in _TIME_FIELDS:
        return to_db_time(value)
    if field == "params":
        return json.dumps(value or {}, ensure_ascii=False)
    if hasattr(value, "value"):
        return value.value
    return value


def _encode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Map Job field names onto columns; `cursor` expands to three columns"""
    encoded: Dict[str, Any] = {}
    for field, value in fields.items():
        if field == "cursor":
            cursor = value if isinstance(value, Cursor) else Cursor(**value)
            encoded["cursor_offset"] = cursor.offset
            encoded["cursor_document"] = cursor.document
            encoded["cursor_word"] = cursor.word
        elif field in _JOB_COLUMNS:
            encoded[field] = _encode_value(field, value)
        else:
            raise KeyError(f"Unknown job field: {field}")
    return encoded


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        kind=row["kind"],
        status=row["status"],
        collection_id=row["collection_id"],
        params=json.loads(row["params"]),
        total_units=row["total_units"],
        processed_units=row["processed_units"],
        new_units=row["new_units"],
        cached_units=row["cached_units"],
        chunk_size=row["chunk_size"],
        chunks_processed=row["chunks_processed"],
        cursor=Cursor(
            offset=row["cursor_offset"],
            document=row["cursor_document"],
            word=row["cursor_word"],
        ),
        requested_action=row["requested_action"],
        claim_token=row["claim_token"],
        resuming_since=from_db_time(row["resuming_since"]),
        auto_resume_attempts=row["auto_resume_attempts"],
        last_auto_resume_at=from_db_time(row["last_auto_resume_at"]),
        last_activity_at=from_db_time(row["last_activity_at"]),
        created_at=from_db_time(row["created_at"]),
        started_at=from_db_time(row["started_at"]),
        finished_at=from_db_time(row["finished_at"]),
        error_message=row["error_message"],
    )


def _row_to_classification(row: sqlite3.Row) -> ClassificationResult:
    return ClassificationResult(
        word=row["word"],
        lemma=row["lemma"],
        pos=row["pos"],
        domain_code=row["domain_code"],
        alternate_codes=json.loads(row["alternate_codes"]),
        is_polysemous=bool(row["is_polysemous"]),
        confidence=row["confidence"],
        source=row["source"],
    )


class AnnotationStorage:
    """
    Durable store for jobs, their work sets, the annotation cache,
    classifications and annotated output, kept in a single SQLite database.

    Every method opens its own connection, so one instance can be shared by
    request handlers, Celery workers and the watchdog. Errors propagate to the
    caller: the orchestrator decides whether they fail a job.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path) if db_path else settings.database_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._schema_lock = threading.Lock()
        self.ensure_schema()

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self._schema_lock, self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.executescript(SCHEMA)

    # ---- jobs ----

    def create_job(self, job: Job) -> Job:
        """Insert a new job record"""
        values = _encode_fields(job.model_dump(exclude={"cursor"}))
        values.update(_encode_fields({"cursor": job.cursor}))
        columns = ", ".join(_JOB_COLUMNS)
        placeholders = ", ".join("?" for _ in _JOB_COLUMNS)
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO jobs ({columns}) VALUES ({placeholders})",
                [values[c] for c in _JOB_COLUMNS],
            )
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def list_jobs(self, statuses: Optional[Iterable[JobStatus]] = None, limit: int = 100) -> List[Job]:
        query = "SELECT * FROM jobs"
        params: List[Any] = []
        if statuses:
            values = [getattr(s, "value", s) for s in statuses]
            query += f" WHERE status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_job(row) for row in rows]

    def update_job(self, job_id: str, changes: Dict[str, Any], expected: Optional[Dict[str, Any]] = None) -> bool:
        """
        Point update guarded by expected column values (compare-and-swap).
        Returns False when the guard no longer holds.
        """
        encoded = _encode_fields(changes)
        assignments = ", ".join(f"{column} = ?" for column in encoded)
        params: List[Any] = list(encoded.values())

        conditions = ["id = ?"]
        params.append(job_id)
        for column, value in _encode_fields(expected or {}).items():
            if value is None:
                conditions.append(f"{column} IS NULL")
            else:
                conditions.append(f"{column} = ?")
                params.append(value)

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {assignments} WHERE {' AND '.join(conditions)}", params
            )
            return cursor.rowcount == 1

    def claim_job(self, job_id: str, token: str, now: datetime, stale_before: datetime) -> Optional[Job]:
        """
        Take the per-job chunk lease. Succeeds only for queued/running jobs
        with no live lease; a lease whose last activity is older than
        `stale_before` is considered abandoned. A queued job becomes running.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET claim_token = ?,
                    status = 'running',
                    started_at = COALESCE(started_at, ?),
                    last_activity_at = ?
                WHERE id = ?
                  AND status IN ('queued', 'running')
                  AND (claim_token IS NULL OR last_activity_at IS NULL OR last_activity_at < ?)
                """,
                (token, to_db_time(now), to_db_time(now), job_id, to_db_time(stale_before)),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row)

    def try_begin_resume(self, job_id: str, now: datetime, stale_before: datetime) -> bool:
        """
        Mark a resume as in flight. Fails while another resume that started
        at or after `stale_before` holds the mark; older marks have expired.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs SET resuming_since = ?
                WHERE id = ? AND (resuming_since IS NULL OR resuming_since < ?)
                """,
                (to_db_time(now), job_id, to_db_time(stale_before)),
            )
            return cursor.rowcount == 1

    def end_resume(self, job_id: str) -> None:
        self.update_job(job_id, {"resuming_since": None})

    # ---- work sets ----

    def save_job_documents(self, job_id: str, documents: List[Dict[str, Any]]) -> int:
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO job_documents (job_id, doc_index, doc_id, title, text, token_count)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (job_id, i, doc.get("id"), doc.get("title"), doc["text"], doc["token_count"])
                    for i, doc in enumerate(documents)
                ],
            )
        return len(documents)

    def get_job_document(self, job_id: str, doc_index: int) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM job_documents WHERE job_id = ? AND doc_index = ?", (job_id, doc_index)
            ).fetchone()
        return dict(row) if row else None

    def list_document_lengths(self, job_id: str) -> List[int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT token_count FROM job_documents WHERE job_id = ? ORDER BY doc_index", (job_id,)
            ).fetchall()
        return [row["token_count"] for row in rows]

    def save_work_items(self, job_id: str, items: List[Dict[str, Any]]) -> int:
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO work_items (job_id, position, word, lemma, pos, previous_code)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (job_id, i, item["word"], item.get("lemma"), item.get("pos"), item.get("previous_code"))
                    for i, item in enumerate(items)
                ],
            )
        return len(items)

    def get_work_items(self, job_id: str, offset: int, limit: int) -> List[Dict[str, Any]]:
        """Range scan of a job's work items by position"""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT word, lemma, pos, previous_code FROM work_items
                WHERE job_id = ? AND position >= ? ORDER BY position LIMIT ?
                """,
                (job_id, offset, limit),
            ).fetchall()
        return [dict(row) for row in rows]

    # ---- annotation cache ----

    def get_cache_entry(self, cache_key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT token_json FROM annotation_cache WHERE cache_key = ?", (cache_key,)
            ).fetchone()
        return row["token_json"] if row else None

    def put_cache_entry(
        self, cache_key: str, surface: str, left: str, right: str, token_json: str, confidence: float
    ) -> bool:
        """Insert a cache entry; an existing key is left untouched"""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO annotation_cache
                    (cache_key, entry_id, surface, left_context, right_context, token_json, confidence, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (cache_key, str(uuid.uuid4()), surface, left, right, token_json, confidence, to_db_time(utc_now())),
            )
            return cursor.rowcount == 1

    def count_cache_entries(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM annotation_cache").fetchone()[0]

    # ---- classifications ----

    def get_classifications(self, words: Iterable[str]) -> Dict[str, ClassificationResult]:
        words = list(dict.fromkeys(words))
        if not words:
            return {}
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM classifications WHERE word IN ({', '.join('?' for _ in words)})", words
            ).fetchall()
        return {row["word"]: _row_to_classification(row) for row in rows}

    def insert_classification(self, result: ClassificationResult, collection_id: Optional[str] = None) -> bool:
        """Write-once insert keyed by word; returns False if the word is already classified"""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO classifications
                    (word, entry_id, lemma, pos, domain_code, alternate_codes, is_polysemous,
                     confidence, source, collection_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.word, str(uuid.uuid4()), result.lemma, result.pos, result.domain_code,
                    json.dumps(result.alternate_codes), int(result.is_polysemous), result.confidence,
                    result.source, collection_id, to_db_time(utc_now()),
                ),
            )
            return cursor.rowcount == 1

    def delete_classifications(self, words: Iterable[str]) -> int:
        words = list(dict.fromkeys(words))
        if not words:
            return 0
        with self._connect() as conn:
            cursor = conn.execute(
                f"DELETE FROM classifications WHERE word IN ({', '.join('?' for _ in words)})", words
            )
            return cursor.rowcount

    def find_reclassification_candidates(
        self,
        include_unclassified: bool,
        include_low_confidence: bool,
        confidence_threshold: float,
        sentinel_code: str,
        collection_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        conditions = []
        params: List[Any] = []
        if include_unclassified:
            conditions.append("domain_code = ?")
            params.append(sentinel_code)
        if include_low_confidence:
            conditions.append("confidence < ?")
            params.append(confidence_threshold)
        if not conditions:
            return []

        query = f"SELECT word, lemma, pos, domain_code, confidence FROM classifications WHERE ({' OR '.join(conditions)})"
        if collection_id:
            query += " AND collection_id = ?"
            params.append(collection_id)
        query += " ORDER BY word"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    # ---- annotated output ----

    def save_annotated_tokens(self, job_id: str, doc_index: int, tokens: List[AnnotatedToken]) -> int:
        """Upsert output tokens; re-running a chunk overwrites the same rows"""
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO annotated_tokens (job_id, doc_index, position, surface, token_json, domain_code)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (job_id, doc_index, t.position, t.surface, t.model_dump_json(), t.domain_code)
                    for t in tokens
                ],
            )
        return len(tokens)

    def get_annotated_tokens(self, job_id: str, doc_index: Optional[int] = None) -> List[AnnotatedToken]:
        query = "SELECT token_json FROM annotated_tokens WHERE job_id = ?"
        params: List[Any] = [job_id]
        if doc_index is not None:
            query += " AND doc_index = ?"
            params.append(doc_index)
        query += " ORDER BY doc_index, position"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [AnnotatedToken.model_validate_json(row["token_json"]) for row in rows]


_storage: Optional[AnnotationStorage] = None


def get_storage() -> AnnotationStorage:
    """
    Get or initialize the shared storage instance.
    """
    global _storage
    if _storage is None:
        _storage = AnnotationStorage()
    return _storage
