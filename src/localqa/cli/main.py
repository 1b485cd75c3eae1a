"""
localqa CLI - index documents, ask questions, manage the runtime.

Commands:
- index: index a JSON document manifest (unchanged versions are skipped)
- ask: retrieve context for a question and stream the answer
- status: report runtime status
- pull: download a model into the runtime
- verify: check chunk store integrity
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.config import AppConfig
from ..core.exceptions import InstallationError, LocalQAError, RuntimeUnhealthy, StoreBusy
from ..core.logging import configure_logging
from ..engine import QAEngine
from ..retrieval.indexer import load_manifest


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_TRANSIENT = 75  # EX_TEMPFAIL: retrying later may succeed


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="localqa",
        description="Local-first question answering over an indexed knowledge base",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Index a crawler manifest
  localqa index documents.json

  # Ask a question and stream the answer
  localqa ask "how to smelt copper"

  # Show the retrieved context only
  localqa ask "how to smelt copper" --no-generate --limit 3

  # Runtime status and model download
  localqa status
  localqa pull phi3:mini
        """,
    )
    parser.add_argument("--config", type=Path, default=None, help="YAML config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--structured-logs", action="store_true", help="Emit JSON log lines")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    index_parser = subparsers.add_parser("index", help="Index a document manifest")
    index_parser.add_argument("manifest", type=Path, help="Path to manifest JSON file")
    index_parser.add_argument("--force", action="store_true", help="Re-index unchanged documents")
    index_parser.add_argument(
        "--offline",
        action="store_true",
        help="Do not start the runtime; embed with the fallback",
    )

    ask_parser = subparsers.add_parser("ask", help="Ask a question")
    ask_parser.add_argument("query", help="Question text")
    ask_parser.add_argument("--limit", type=int, default=None, help="Context chunks to retrieve")
    ask_parser.add_argument(
        "--no-generate",
        action="store_true",
        help="Print retrieved context as JSON instead of generating an answer",
    )
    ask_parser.add_argument("--model", default=None, help="Generation model override")

    subparsers.add_parser("status", help="Start the runtime if needed and report status")

    pull_parser = subparsers.add_parser("pull", help="Pull a model")
    pull_parser.add_argument("model", help="Model name, e.g. phi3:mini")

    subparsers.add_parser("verify", help="Check chunk store integrity")

    return parser


def _print_json(data: Dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _cmd_index(engine: QAEngine, args: argparse.Namespace) -> int:
    manifest = load_manifest(args.manifest)
    if not args.offline:
        status = await engine.ensure_runtime_ready()
        if not status.healthy:
            logger.warning("Runtime unavailable; indexing with fallback embeddings")
    report = await engine.index_manifest(manifest, force=args.force)
    _print_json(report.to_dict())
    return EXIT_ERROR if report.errors else EXIT_OK


async def _cmd_ask(engine: QAEngine, args: argparse.Namespace) -> int:
    if args.no_generate:
        prepared = await engine.prepare_answer(args.query, limit=args.limit)
        _print_json({
            "query_id": prepared.query_id,
            "sources": prepared.sources,
            "warnings": prepared.warnings,
        })
        return EXIT_OK

    status = await engine.ensure_runtime_ready()
    if not status.healthy:
        raise RuntimeUnhealthy(f"Runtime is {status.state.value}")
    if args.model:
        engine.supervisor.set_model(args.model)

    prepared = await engine.prepare_answer(args.query, limit=args.limit)
    for warning in prepared.warnings:
        print(f"warning: {warning}", file=sys.stderr)

    async for chunk in engine.stream_prepared(prepared):
        sys.stdout.write(chunk.partial_text)
        sys.stdout.flush()
    sys.stdout.write("\n")

    sources: List[str] = []
    for source in prepared.sources:
        if source["source_document"] not in sources:
            sources.append(source["source_document"])
    if sources:
        print("Sources: " + ", ".join(sources))
    return EXIT_OK


async def _cmd_status(engine: QAEngine, args: argparse.Namespace) -> int:
    status = await engine.ensure_runtime_ready()
    _print_json(status.to_dict())
    return EXIT_OK if status.healthy else EXIT_ERROR


async def _cmd_pull(engine: QAEngine, args: argparse.Namespace) -> int:
    status = await engine.ensure_runtime_ready()
    if not status.healthy:
        raise RuntimeUnhealthy(f"Runtime is {status.state.value}")

    last_status = None
    async for progress in engine.supervisor.pull_model(args.model):
        if progress.indeterminate:
            if progress.status != last_status:
                print(progress.status, file=sys.stderr)
        else:
            print(f"{progress.status}: {progress.fraction:.0%}", file=sys.stderr)
        last_status = progress.status
    print(f"Pulled {args.model}")
    return EXIT_OK


async def _cmd_verify(engine: QAEngine, args: argparse.Namespace) -> int:
    report = await engine.store.verify_integrity()
    stats = await engine.store.stats()
    _print_json({
        "ok": report.ok,
        "orphaned_chunk_ids": report.orphaned_chunk_ids,
        "dangling_chunk_ids": report.dangling_chunk_ids,
        "stats": stats,
    })
    return EXIT_OK if report.ok else EXIT_ERROR


_COMMANDS = {
    "index": _cmd_index,
    "ask": _cmd_ask,
    "status": _cmd_status,
    "pull": _cmd_pull,
    "verify": _cmd_verify,
}


async def _run_command(args: argparse.Namespace, config: AppConfig) -> int:
    offline = args.command == "index" and args.offline
    engine = QAEngine(config, use_runtime_embeddings=not offline)
    try:
        await engine.open()
        return await _COMMANDS[args.command](engine, args)
    finally:
        await engine.close()


def run(argv: Optional[List[str]] = None) -> int:
    """
    Parse arguments and run a command.

    Returns:
        Process exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        structured=args.structured_logs,
    )

    if not args.command:
        parser.print_help()
        return EXIT_ERROR

    try:
        config = AppConfig.load(args.config)
        return asyncio.run(_run_command(args, config))
    except StoreBusy as e:
        logger.error(f"{e} (transient; try again shortly)")
        return EXIT_TRANSIENT
    except (RuntimeUnhealthy, InstallationError) as e:
        logger.error(str(e))
        return EXIT_ERROR
    except LocalQAError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return EXIT_ERROR
    except (OSError, ValueError) as e:
        logger.error(f"Error: {e}")
        return EXIT_ERROR
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_ERROR


def main() -> None:
    """CLI entry point."""
    sys.exit(run())


if __name__ == "__main__":
    main()
