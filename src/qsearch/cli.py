#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""
CLI entry point for the qs command.

Usage:
    qs init
    qs index [--mode full|incremental]
    qs update
    qs status [--json]
    qs search QUERY... [-n K] [-C LINES] [--json]
    qs similar FILE [-n K] [-C LINES] [--json]
    qs QUERY...                      (shorthand for search)
"""
import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from .errors import QsError

COMMANDS = (
    "init", "index", "update", "status", "search", "similar",
    "download-models", "dump-defaults",
)

logger = logging.getLogger(__name__)


class _Colors:
    """ANSI colors, disabled when stdout is not a TTY."""

    def __init__(self, enabled: bool):
        self.RESET = "\033[0m" if enabled else ""
        self.BOLD = "\033[1m" if enabled else ""
        self.DIM = "\033[2m" if enabled else ""
        self.CYAN = "\033[36m" if enabled else ""
        self.GREEN = "\033[32m" if enabled else ""
        self.YELLOW = "\033[33m" if enabled else ""
        self.RED = "\033[31m" if enabled else ""
        self.BOLD_CYAN = "\033[1;36m" if enabled else ""


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="Path to config.json (overrides .qs/config.json)")
    common.add_argument("--json", action="store_true", help="Output as JSON")
    common.add_argument("-v", "--verbose", action="store_true", help="Show diagnostic messages")

    results = argparse.ArgumentParser(add_help=False)
    results.add_argument("-n", "--limit", type=int, default=None, help="Number of chunks to retrieve")
    results.add_argument("-C", "--context", type=int, default=None, help="Lines of context around each match")

    parser = argparse.ArgumentParser(
        prog="qs",
        description="Local semantic code search",
        epilog=(
            "config file search order (first found wins):\n"
            "  1. --config PATH argument\n"
            "  2. QS_CONFIG environment variable\n"
            "  3. <repository>/.qs/config.json\n"
            "  If none found, built-in defaults are used."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", parents=[common], help="Create a .qs directory here")
    p.add_argument("path", nargs="?", default=".", help="Directory to initialize")

    p = sub.add_parser("index", parents=[common], help="Build or update the index")
    p.add_argument("path", nargs="?", default=None, help="Path inside the repository")
    p.add_argument("--mode", choices=("incremental", "full"), default="full",
                   help="full rebuilds when the model changed; incremental refuses")

    p = sub.add_parser("update", parents=[common], help="Incrementally update the index")
    p.add_argument("path", nargs="?", default=None, help="Path inside the repository")

    sub.add_parser("status", parents=[common], help="Show index status")

    p = sub.add_parser("search", parents=[common, results], help="Search the index")
    p.add_argument("query", nargs="+", help="Search query text")

    p = sub.add_parser("similar", parents=[common, results], help="Find code similar to a file")
    p.add_argument("file", help="Reference file")

    sub.add_parser("download-models", parents=[common], help="Download the embedding model, then exit")
    sub.add_parser("dump-defaults", parents=[common], help="Print default configuration as YAML")
    return parser


def _normalize_argv(argv: List[str]) -> List[str]:
    """Treat ``qs some words`` as ``qs search some words``."""
    positional = [arg for arg in argv if not arg.startswith("-")]
    if positional and positional[0] not in COMMANDS:
        return ["search"] + argv
    return argv


def _setup_logging(verbose: bool) -> None:
    log_level = logging.INFO if verbose else logging.WARNING
    logging.basicConfig(level=log_level, format="%(message)s", stream=sys.stderr)


def _attach_log_file(root: Path, config: dict) -> Optional[logging.Handler]:
    from .cfgload import qs_dir
    from .utils.logging import attach_file_handler

    log_cfg = config.get("logging", {})
    if not log_cfg.get("file"):
        return None
    try:
        return attach_file_handler(qs_dir(root) / log_cfg["file"], log_cfg.get("max_size_mb", 10))
    except OSError as e:
        logger.warning(f"Could not open log file: {e}")
        return None


def _print_results(results, c: _Colors, elapsed: float) -> None:
    from .utils.text import truncate_lines

    if not results:
        print(f"{c.YELLOW}No results found.{c.RESET}")
        return

    for i, result in enumerate(results, 1):
        kind = f", {result.kind}" if result.kind else ""
        print(
            f"{c.BOLD_CYAN}[{i}]{c.RESET} {c.CYAN}{result.path}{c.RESET}"
            f":{result.start_line}-{result.end_line}  "
            f"{c.DIM}(score: {result.score:.3f}{kind}){c.RESET}"
        )
        numbered = [
            (result.context_start + offset, line) for offset, line in enumerate(result.lines)
        ]
        width = len(str(result.context_end))
        for entry in truncate_lines(numbered):
            if entry is None:
                print(f"    {c.DIM}{'.' * width} ...{c.RESET}")
                continue
            line_no, line = entry
            in_span = result.start_line <= line_no <= result.end_line
            color = "" if in_span else c.DIM
            print(f"    {c.DIM}{line_no:>{width}}{c.RESET} {color}{line}{c.RESET if color else ''}")
        print()
    print(f"{c.DIM}({elapsed:.2f}s){c.RESET}")


def _cmd_init(args, c: _Colors) -> int:
    from .cfgload import init_repository, qs_dir

    root = Path(args.path).resolve()
    if not root.is_dir():
        raise QsError(f"{root} is not a directory")
    if init_repository(root):
        print(f"{c.GREEN}Initialized empty qs index in {qs_dir(root)}{c.RESET}")
    else:
        print(f"{c.YELLOW}qs index already exists in {qs_dir(root)}{c.RESET}")
    return 0


def _cmd_index(args, root: Path, config: dict, c: _Colors, mode: str) -> int:
    from .index import GracefulAbort, run_index
    from .utils.progress import ConsoleProgress, NullProgress

    def on_abort():
        print(
            f"\n{c.YELLOW}Ctrl-C received. Finishing current files and saving state...{c.RESET}\n"
            f"{c.DIM}(Press Ctrl-C again to force quit immediately){c.RESET}",
            file=sys.stderr,
        )

    progress = ConsoleProgress() if (sys.stderr.isatty() and not args.json) else NullProgress()
    abort_ctl = GracefulAbort(on_abort)
    abort_ctl.install()
    try:
        report = run_index(root, mode=mode, cancel=abort_ctl.event, progress=progress, config=config)
    finally:
        abort_ctl.uninstall()

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
        return 0

    if report.wiped:
        print(f"{c.YELLOW}Embedding model changed; index was rebuilt from scratch.{c.RESET}")
    for failure in report.failed:
        print(f"{c.RED}  failed{c.RESET} {failure.path} {c.DIM}[{failure.stage}] {failure.reason}{c.RESET}")

    summary = (
        f"{len(report.added)} added, {len(report.modified)} modified, "
        f"{len(report.removed)} removed, {report.unchanged} unchanged, "
        f"{report.excluded} excluded, {len(report.failed)} failed "
        f"({report.chunks_embedded} chunks embedded)"
    )
    if report.cancelled:
        print(f"{c.YELLOW}Indexing interrupted: {summary}. Run again to continue.{c.RESET}")
    elif not (report.added or report.modified or report.removed or report.failed):
        print(f"{c.GREEN}Index is up to date.{c.RESET} {c.DIM}({summary}){c.RESET}")
    else:
        print(f"{c.GREEN}Indexing complete:{c.RESET} {summary}")
    return 0


def _cmd_status(args, root: Path, config: dict, c: _Colors) -> int:
    from .status import get_status

    status = get_status(root, config=config)
    if args.json:
        print(json.dumps(status.to_dict(), indent=2))
        return 0

    print(f"{c.BOLD}Repository:{c.RESET} {status.root}")
    print(f"  Model:           {status.model} ({status.dimension} dims)")
    if status.indexed_model and status.indexed_model != status.model:
        print(f"  {c.YELLOW}Index built with {status.indexed_model}; run 'qs index' to rebuild{c.RESET}")
    print(f"  Indexed files:   {status.file_count}")
    print(f"  Chunks:          {status.chunk_count}")
    print(f"  Vectors:         {status.vector_count}")
    print(f"  Excluded files:  {status.excluded_count}")
    stale_color = c.YELLOW if status.stale_file_count else c.GREEN
    print(f"  Stale files:     {stale_color}{status.stale_file_count}{c.RESET}")
    if status.stale_file_count:
        print(
            f"  {c.DIM}({len(status.added)} new, {len(status.modified)} modified, "
            f"{len(status.removed)} deleted; run 'qs update'){c.RESET}"
        )
    if not status.consistent:
        print(f"  {c.YELLOW}Manifest and vector store disagree; the next update will repair them{c.RESET}")
    return 0


def _cmd_query(args, root: Path, config: dict, c: _Colors) -> int:
    from .search import QueryEngine
    from .utils.progress import Spinner

    with QueryEngine(root, config=config) as engine:
        if sys.stderr.isatty() and not args.json:
            with Spinner("Loading embedding model"):
                engine.load_model()
        start_time = time.time()
        if args.command == "similar":
            results = engine.similar(args.file, k=args.limit, context_lines=args.context)
        else:
            results = engine.query(" ".join(args.query), k=args.limit, context_lines=args.context)
    elapsed = time.time() - start_time

    if args.json:
        payload = {
            "results": [r.to_dict() for r in results],
            "retrieval_time": f"{elapsed:.2f}s",
        }
        print(json.dumps(payload, indent=2))
        return 0

    _print_results(results, c, elapsed)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the `qs` command."""
    os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")

    parser = _build_parser()
    args = parser.parse_args(_normalize_argv(list(sys.argv[1:] if argv is None else argv)))
    _setup_logging(args.verbose)
    c = _Colors(sys.stdout.isatty() and not args.json)

    if not args.verbose:
        os.environ.setdefault("ORT_LOG_LEVEL", "ERROR")
        os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")

    log_handler = None
    try:
        if args.command == "dump-defaults":
            import yaml

            from .cfgload import _DEFAULTS
            yaml.dump(_DEFAULTS, sys.stdout, default_flow_style=False, sort_keys=False)
            return 0

        if args.command == "init":
            return _cmd_init(args, c)

        from .cfgload import find_root, load_config

        config_file = Path(args.config) if args.config else None
        if args.command == "download-models":
            from .models.embeddings import ensure_model_cached
            cache_dir = ensure_model_cached(load_config(config_file=config_file))
            print(f"{c.GREEN}Model cached in {cache_dir}{c.RESET}")
            return 0

        root = find_root(getattr(args, "path", None))
        config = load_config(root, config_file=config_file)
        log_handler = _attach_log_file(root, config)

        if args.command == "index":
            return _cmd_index(args, root, config, c, mode=args.mode)
        if args.command == "update":
            return _cmd_index(args, root, config, c, mode="incremental")
        if args.command == "status":
            return _cmd_status(args, root, config, c)
        return _cmd_query(args, root, config, c)
    except (QsError, FileNotFoundError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"{c.RED}Error: {e}{c.RESET}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print(f"\n{c.YELLOW}Aborted.{c.RESET}", file=sys.stderr)
        return 130
    finally:
        if log_handler is not None:
            logging.getLogger().removeHandler(log_handler)
            log_handler.close()


if __name__ == "__main__":
    sys.exit(main())
