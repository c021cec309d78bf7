"""
Command line interface.

    reporag ingest --url URL [--branch B] [--path P] [--ext md --ext rst]
    reporag query "how do I ..." [--conversation-id ID]
    reporag runs
    reporag resume RUN_ID
    reporag cancel RUN_ID
    reporag serve
"""

import argparse
import logging
import sys
from typing import List, Optional

from reporag.config import get_settings
from reporag.errors import RepoRAGError
from reporag.graph.state import RepositoryDescriptor
from reporag.logger import setup_logging
from reporag.services import build_services

logger = logging.getLogger(__name__)


def _cmd_ingest(services, args) -> int:
    settings = services.settings
    repository = RepositoryDescriptor(
        url=args.url,
        branch=args.branch or settings.default_branch,
        path=args.path,
        file_extensions=args.ext or settings.default_file_extensions,
    )
    run_id = services.runner.create_run(repository, run_id=args.run_id)
    print(f"Run: {run_id}")
    run = services.runner.execute(run_id)
    print(f"Status: {run.status.value}")
    return 0


def _cmd_query(services, args) -> int:
    result = services.pipeline.answer_query(args.text, args.conversation_id)
    print(result.answer)
    print()
    print(f"Conversation: {result.conversation_id}")
    for doc in result.related_documents:
        print(f"  - {doc.source_path} (distance {doc.distance:.4f})")
    return 0


def _cmd_runs(services, args) -> int:
    runs = services.registry.list_runs(limit=args.limit)
    if not runs:
        print("No ingestion runs.")
        return 0
    for run in runs:
        line = f"{run.run_id}  {run.status.value:<20} {run.created_at:%Y-%m-%d %H:%M:%S}  {run.repository.url}"
        if run.error_message:
            line += f"  ({run.failed_step or 'run'}: {run.error_message})"
        print(line)
    return 0


def _cmd_resume(services, args) -> int:
    run = services.runner.resume(args.run_id)
    print(f"Status: {run.status.value}")
    return 0


def _cmd_cancel(services, args) -> int:
    run = services.runner.cancel(args.run_id)
    print(f"Status: {run.status.value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reporag",
        description="Ingest a repository into a vector index and ask questions about it.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Run an ingestion saga to completion")
    ingest.add_argument("--url", required=True, help="Repository URL")
    ingest.add_argument("--branch", help="Branch to ingest")
    ingest.add_argument("--path", default="", help="Subdirectory to restrict ingestion to")
    ingest.add_argument("--ext", action="append", help="File extension to keep (repeatable)")
    ingest.add_argument("--run-id", help="Custom run ID")
    ingest.set_defaults(handler=_cmd_ingest)

    query = subparsers.add_parser("query", help="Ask a question against the latest completed run")
    query.add_argument("text", help="The question")
    query.add_argument("--conversation-id", help="Continue an existing conversation")
    query.set_defaults(handler=_cmd_query)

    runs = subparsers.add_parser("runs", help="List ingestion runs")
    runs.add_argument("--limit", type=int, default=20)
    runs.set_defaults(handler=_cmd_runs)

    resume = subparsers.add_parser("resume", help="Resume an interrupted run")
    resume.add_argument("run_id")
    resume.set_defaults(handler=_cmd_resume)

    cancel = subparsers.add_parser("cancel", help="Cancel and compensate a run")
    cancel.add_argument("run_id")
    cancel.set_defaults(handler=_cmd_cancel)

    subparsers.add_parser("serve", help="Start the API server")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(args.log_level or settings.log_level, settings.json_logs)

    if args.command == "serve":
        from reporag.api.main import run_server
        run_server()
        return 0

    services = build_services(settings)
    try:
        return args.handler(services, args)
    except RepoRAGError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
