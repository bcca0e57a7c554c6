"""Command line entry point for bookpipe."""

import argparse
import logging
import sys
import time
from typing import Optional, Sequence

from . import __version__
from .config import PipelineConfig
from .documents import DocumentCatalog
from .errors import BookpipeError
from .jobs.models import JobKind, JobStatus, TargetType
from .jobs.query import JobQueryService
from .jobs.storage import JobStorage
from .runtime import build_runtime


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bookpipe",
        description="Narrate and illustrate long documents as tracked background jobs.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging output.")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP API with uvicorn.")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: %(default)s)")
    serve.add_argument("--port", type=int, default=8000, help="TCP port (default: %(default)s)")
    serve.add_argument(
        "--epub",
        action="append",
        default=[],
        metavar="PATH",
        help="EPUB file to register at startup; may be repeated.",
    )

    load = commands.add_parser("load", help="Register an EPUB and print its document tree.")
    load.add_argument("epub", help="Path to the EPUB file.")

    run = commands.add_parser("run", help="Run one job over part of an EPUB and wait for it.")
    run.add_argument("epub", help="Path to the EPUB file.")
    run.add_argument("target_type", choices=[t.value for t in TargetType])
    run.add_argument("target_id", help="Id printed by 'bookpipe load'.")
    run.add_argument("--kind", choices=[k.value for k in JobKind], default=JobKind.NARRATE.value)
    run.add_argument("--timeout", type=float, default=None, help="Give up waiting after this many seconds.")

    status = commands.add_parser("status", help="Show a job's status.")
    status.add_argument("job_id")

    return parser


def _print_tree(catalog: DocumentCatalog, document_id: str):
    document = catalog.get_document(document_id)
    print(f"document {document.document_id}  {document.title}" + (f" by {document.author}" if document.author else ""))
    for chapter_id in document.chapter_ids:
        chapter = catalog.get_chapter(chapter_id)
        print(f"  chapter {chapter.chapter_id}  {chapter.title} ({len(chapter.passage_ids)} passages)")
        for scene_id in chapter.scene_ids:
            scene = catalog.get_scene(scene_id)
            print(f"    scene {scene.scene_id}  #{scene.order} ({len(scene.passage_ids)} passages)")


def _cmd_serve(args, config: PipelineConfig) -> int:
    import uvicorn

    from .webapi import create_app

    runtime = build_runtime(config)
    try:
        for path in args.epub:
            document = runtime.catalog.load_epub(path)
            print(f"Loaded {document.title} as {document.document_id}")
        uvicorn.run(create_app(runtime), host=args.host, port=args.port)
    finally:
        runtime.close()
    return 0


def _cmd_load(args, config: PipelineConfig) -> int:
    catalog = DocumentCatalog()
    document = catalog.load_epub(args.epub)
    _print_tree(catalog, document.document_id)
    return 0


def _cmd_run(args, config: PipelineConfig) -> int:
    runtime = build_runtime(config)
    try:
        runtime.catalog.load_epub(args.epub)
        job = runtime.orchestrator.submit(args.target_type, args.target_id, kind=args.kind)
        print(f"Job {job.job_id}: {job.total_tasks} task(s)")

        deadline = None if args.timeout is None else time.monotonic() + args.timeout
        last_progress = -1
        while True:
            job = runtime.query.get(job.job_id)
            if job.progress != last_progress:
                print(f"  {job.format_status_message()} [{job.completed_tasks} ok, {job.failed_tasks} failed]")
                last_progress = job.progress
            if job.is_terminal():
                break
            if deadline is not None and time.monotonic() > deadline:
                print("Timed out waiting; cancelling.")
                runtime.orchestrator.cancel(job.job_id)
                job = runtime.orchestrator.wait(job.job_id)
                break
            time.sleep(0.5)
    finally:
        runtime.close()

    print(job.format_status_message())
    if job.error_message:
        print(f"Last error: {job.error_message}")
    return 0 if job.status == JobStatus.COMPLETED else 1


def _cmd_status(args, config: PipelineConfig) -> int:
    storage = JobStorage(config.db_path)
    try:
        job = JobQueryService(storage).get(args.job_id)
    finally:
        storage.close()

    print(f"Job:      {job.job_id}")
    print(f"Target:   {job.target_type.value} {job.target_id} ({job.kind.value})")
    print(f"Status:   {job.status.value} - {job.format_status_message()}")
    print(f"Progress: {job.progress}% ({job.completed_tasks} ok, {job.failed_tasks} failed, {job.total_tasks} total)")
    if job.error_message:
        print(f"Error:    {job.error_message}")
    return 0


_COMMANDS = {
    "serve": _cmd_serve,
    "load": _cmd_load,
    "run": _cmd_run,
    "status": _cmd_status,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the bookpipe CLI tool."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = PipelineConfig.from_env()
        return _COMMANDS[args.command](args, config)
    except BookpipeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
