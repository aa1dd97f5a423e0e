#!/usr/bin/env python3
"""
Command line interface for the annotation service.

Usage:
    annotation-service annotate FILE [--classify]
    annotation-service submit COLLECTION DIR [--chunk-size N] [--foreground]
    annotation-service continue JOB_ID [--expected-offset N]
    annotation-service status JOB_ID
    annotation-service watch [--once] [--interval SECONDS]
    annotation-service serve [--host HOST] [--port PORT]
"""
import argparse
import json
import sys
import time
from pathlib import Path
from typing import List, Optional

from annotation_service.core.config import settings, configure_logging
from annotation_service.core.continuation import RecordingScheduler
from annotation_service.core.errors import AnnotationServiceError
from annotation_service.core.orchestrator import JobOrchestrator, build_orchestrator, get_orchestrator
from annotation_service.core.watchdog import StuckJobWatchdog
from annotation_service.engine.grammar import coverage
from annotation_service.engine.pipeline import assign_domains
from annotation_service.schemas.job import ChunkOutcomeKind, JobResponse, JobStatus, WatchdogOutcomeKind


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _job_summary(orchestrator: JobOrchestrator, job_id: str) -> dict:
    job = orchestrator.get_job(job_id)
    return JobResponse(job=job, progress=orchestrator.progress_for(job)).model_dump(mode="json")


def cmd_annotate(args) -> int:
    if not args.file.is_file():
        print(f"Error: '{args.file}' is not a file")
        return 1

    orchestrator = get_orchestrator()
    text = args.file.read_text(encoding="utf-8", errors="ignore")
    tokens = orchestrator.pipeline.annotate(text)
    if args.classify:
        tokens, _, _ = assign_domains(tokens, orchestrator.storage, orchestrator.classifier)

    _print_json({
        "source": args.file.name,
        "tokens": [t.model_dump(mode="json") for t in tokens],
        "coverage": coverage(tokens).model_dump(),
    })
    return 0


def run_foreground(orchestrator: JobOrchestrator, job_id: str, verbose: bool = False) -> int:
    """Drive a job chunk by chunk in this process, following its own continuations"""
    scheduler = orchestrator.scheduler
    orchestrator.start(job_id)
    while True:
        pending = scheduler.pop()
        if pending is None:
            break
        outcome = orchestrator.process_next_chunk(*pending)
        if verbose:
            progress = orchestrator.get_progress(job_id)
            print(f"  {outcome.outcome.value}: {outcome.processed} units ({progress.percent}%, eta {progress.eta or '-'})")
    job = orchestrator.get_job(job_id)
    return 0 if job.status == JobStatus.completed else 1


def cmd_submit(args) -> int:
    if not args.directory.is_dir():
        print(f"Error: '{args.directory}' is not a directory")
        return 1

    files = []
    for ext in args.extensions:
        files.extend(args.directory.rglob(f"*{ext}"))
    if not files:
        print(f"No files found with extensions {args.extensions} in {args.directory}")
        return 1

    documents = [
        {"id": path.stem, "title": path.name, "text": path.read_text(encoding="utf-8", errors="ignore")}
        for path in sorted(files)
    ]

    if args.foreground:
        orchestrator = build_orchestrator(scheduler=RecordingScheduler())
    else:
        orchestrator = get_orchestrator()

    job = orchestrator.create_document_job(args.collection, documents, args.chunk_size)
    print(f"Created job {job.id}: {len(documents)} documents, {job.total_units} tokens")

    if args.foreground:
        code = run_foreground(orchestrator, job.id, args.verbose)
        _print_json(_job_summary(orchestrator, job.id))
        return code

    orchestrator.start(job.id)
    return 0


def cmd_continue(args) -> int:
    orchestrator = get_orchestrator()
    outcome = orchestrator.process_next_chunk(args.job_id, args.expected_offset)
    _print_json(outcome.model_dump(mode="json"))
    return 1 if outcome.outcome in (ChunkOutcomeKind.failed, ChunkOutcomeKind.halted) else 0


def cmd_status(args) -> int:
    _print_json(_job_summary(get_orchestrator(), args.job_id))
    return 0


def cmd_watch(args) -> int:
    watchdog = StuckJobWatchdog(get_orchestrator())
    while True:
        for outcome in watchdog.sweep():
            if outcome.outcome != WatchdogOutcomeKind.healthy:
                print(f"{outcome.job_id}: {outcome.outcome.value} (attempts {outcome.attempts})")
        if args.once:
            return 0
        time.sleep(args.interval)


def cmd_serve(args) -> int:
    import uvicorn

    uvicorn.run("annotation_service.main:app", host=args.host, port=args.port, log_level=(args.log_level or settings.LOG_LEVEL).lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="annotation-service",
        description="Linguistic annotation pipeline and job runner",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    annotate = sub.add_parser("annotate", help="Annotate a single text file")
    annotate.add_argument("file", type=Path)
    annotate.add_argument("--classify", action="store_true", help="Also assign semantic domains")
    annotate.set_defaults(func=cmd_annotate)

    submit = sub.add_parser("submit", help="Create an annotation job for a directory of texts")
    submit.add_argument("collection", help="Collection identifier (e.g. an artist)")
    submit.add_argument("directory", type=Path)
    submit.add_argument("--chunk-size", type=int, default=None)
    submit.add_argument("--extensions", nargs="+", default=[".txt", ".md"])
    submit.add_argument("--foreground", action="store_true", help="Process the job in this process")
    submit.add_argument("--verbose", "-v", action="store_true")
    submit.set_defaults(func=cmd_submit)

    cont = sub.add_parser("continue", help="Process the next chunk of a job")
    cont.add_argument("job_id")
    cont.add_argument("--expected-offset", type=int, default=None)
    cont.set_defaults(func=cmd_continue)

    status = sub.add_parser("status", help="Show a job and its progress")
    status.add_argument("job_id")
    status.set_defaults(func=cmd_status)

    watch = sub.add_parser("watch", help="Run the stuck-job watchdog")
    watch.add_argument("--once", action="store_true")
    watch.add_argument("--interval", type=float, default=float(settings.WATCHDOG_INTERVAL_SECONDS))
    watch.set_defaults(func=cmd_watch)

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point"""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        return args.func(args)
    except AnnotationServiceError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
