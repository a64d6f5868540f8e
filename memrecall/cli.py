"""
memrecall CLI — Store Maintenance Commands

Commands:
    memrecall stats                              — record counts by scope/status
    memrecall migrate SRC DST [--dry-run]        — copy records between stores
    memrecall compact [--drop-expired-archived]  — reclaim space in a store
    memrecall export  [-o FILE]                  — records as JSONL → stdout/file
    memrecall import  FILE [--replace]           — JSONL → store

Store selection (stats/compact/export/import):
    --store PATH     explicit store file (backend inferred from the suffix
                     unless --backend is given: .db/.sqlite → sqlite)
    --repo DIR       repository root (default: current directory); the
                     store is <DIR>/.memrecall/memory.{jsonl,db}

Environment variables:
    MEMRECALL_BACKEND      jsonl | sqlite (default: jsonl)
    MEMRECALL_REPO_JSONL   override for the repo JSONL path
    MEMRECALL_REPO_DB      override for the repo SQLite path

Precedence (invariant):
    CLI --flag  >  MEMRECALL_* env var  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (bad args, conflicts, validation, missing file)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from memrecall import __version__
from memrecall.backend import MemoryBackend
from memrecall.config import MemoryConfig, load_config
from memrecall.errors import BackendUnavailableError, StoreError
from memrecall.factory import choose_backend, open_repo_store, open_store
from memrecall.migrate import archive_expired, migrate

logger = logging.getLogger(__name__)

_SQLITE_SUFFIXES = {".db", ".sqlite", ".sqlite3"}


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_config(args: argparse.Namespace) -> MemoryConfig:
    """--config FILE (JSON) or compiled defaults; --backend overrides."""
    cfg = load_config(getattr(args, "config", None))
    backend = getattr(args, "backend", None)
    if backend:
        cfg = dataclasses.replace(
            cfg, store=dataclasses.replace(cfg.store, backend=backend),
        )
    return cfg


def _infer_backend(path: str, explicit: Optional[str] = None) -> str:
    if explicit:
        return choose_backend(explicit).value
    return "sqlite" if Path(path).suffix.lower() in _SQLITE_SUFFIXES else "jsonl"


def _open_from_args(args: argparse.Namespace) -> MemoryBackend:
    cfg = _resolve_config(args)
    store_path = getattr(args, "store", None)
    if store_path:
        return open_store(store_path, _infer_backend(store_path, args.backend), cfg)
    return open_repo_store(getattr(args, "repo", None) or os.getcwd(), cfg)


# ===========================================================================
# Commands
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    """Show memory store statistics."""
    with _open_from_args(args) as store:
        stats = store.stats()

    if getattr(args, "json", False):
        stats["status"] = "ok"
        print(json.dumps(stats, indent=2, ensure_ascii=False))
        return
    print("Memory Store Statistics")
    print("=" * 40)
    print(f"  Backend: {stats['backend']}")
    print(f"  Path:    {stats['path']}")
    print(f"  Total:   {stats['total']}")
    if stats.get("corrupt"):
        print(f"  Corrupt: {stats['corrupt']} (skipped)")
    print("  By scope:")
    for scope, count in sorted(stats["by_scope"].items()):
        print(f"    {scope:8s}: {count}")
    print("  By status:")
    for status, count in sorted(stats["by_status"].items()):
        print(f"    {status:8s}: {count}")


def cmd_migrate(args: argparse.Namespace) -> None:
    """Copy every record from SRC into DST, preserving identity."""
    cfg = _resolve_config(args)
    src_backend = _infer_backend(args.source, args.from_backend)
    dst_backend = _infer_backend(args.destination, args.to_backend)
    if not os.path.exists(args.source):
        _warn(f"Error: source store not found: {args.source}")
        sys.exit(1)

    with open_store(args.source, src_backend, cfg) as src, \
            open_store(args.destination, dst_backend, cfg) as dst:
        result = migrate(src, dst, dry_run=args.dry_run)

    if getattr(args, "json", False):
        print(json.dumps(result.to_dict(), indent=2))
        return
    verb = "would migrate" if args.dry_run else "migrated"
    _info(
        f"[migrate] {src_backend} → {dst_backend}: {verb} {result.migrated}, "
        f"skipped {result.skipped}"
    )
    for err in result.errors:
        _warn(f"  skipped: {err}")


def cmd_compact(args: argparse.Namespace) -> None:
    """Compact a store; optionally archive and purge expired records."""
    with _open_from_args(args) as store:
        archived = archive_expired(store) if args.archive_expired else 0
        result = store.compact(drop_expired_archived=args.drop_expired_archived)

    if getattr(args, "json", False):
        print(json.dumps({**result.to_dict(), "archived": archived}, indent=2))
        return
    if archived:
        _info(f"[compact] archived {archived} expired record(s)")
    _info(
        f"[compact] {result.read} read, {result.written} written, "
        f"{result.dropped} dropped ({result.bytes_before} → {result.bytes_after} bytes)"
    )


def cmd_export(args: argparse.Namespace) -> None:
    """Export records as JSONL to stdout or a file."""
    with _open_from_args(args) as store:
        if args.output:
            # bytes a JSONL store read through surrogateescape go back out unchanged
            with open(args.output, "w", encoding="utf-8", errors="surrogateescape") as f:
                count = store.export_lines(f)
        else:
            if hasattr(sys.stdout, "reconfigure"):
                sys.stdout.reconfigure(errors="surrogateescape")
            count = store.export_lines(sys.stdout)
    _info(f"[export] {count} record(s) exported")


def cmd_import(args: argparse.Namespace) -> None:
    """Import records from a JSONL file (or '-' for stdin)."""
    if args.file != "-" and not os.path.isfile(args.file):
        _warn(f"Error: file not found: {args.file}")
        sys.exit(1)
    with _open_from_args(args) as store:
        source = sys.stdin if args.file == "-" else args.file
        result = store.import_lines(
            source,
            replace_existing=args.replace,
            allow_secrets=args.allow_secrets,
        )

    if getattr(args, "json", False):
        print(json.dumps(result.to_dict(), indent=2))
    else:
        _info(
            f"[import] {result.imported} imported, {result.replaced} replaced, "
            f"{result.skipped_existing} existing, {result.skipped_policy} rejected, "
            f"{result.errors} error(s)"
        )
    if result.errors and not (result.imported or result.replaced):
        sys.exit(1)


# ===========================================================================
# Main
# ===========================================================================


def _add_store_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("--store", default=None, help="Explicit store file")
    p.add_argument(
        "--repo", default=None,
        help="Repository root (default: current directory)",
    )


def build_parser() -> argparse.ArgumentParser:
    # SUPPRESS defaults prevent subparser defaults from overriding
    # values parsed at the main-parser level (argparse parents quirk).
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="Path to a JSON config file",
    )
    _common.add_argument(
        "--backend", default=argparse.SUPPRESS, choices=["jsonl", "sqlite"],
        help="Backend for --store/--repo (default: MEMRECALL_BACKEND or jsonl)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="memrecall",
        description="memrecall — local memory store maintenance",
        parents=[_common],
    )
    parser.add_argument("--version", action="version", version=f"memrecall {__version__}")

    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- stats -------------------------------------------------------------
    p_stats = sub.add_parser("stats", parents=[_common], help="Store statistics")
    _add_store_arguments(p_stats)
    p_stats.set_defaults(func=cmd_stats)

    # -- migrate -----------------------------------------------------------
    p_mig = sub.add_parser("migrate", parents=[_common], help="Copy records between stores")
    p_mig.add_argument("source", help="Source store file")
    p_mig.add_argument("destination", help="Destination store file (created if missing)")
    p_mig.add_argument("--from", dest="from_backend", default=None, choices=["jsonl", "sqlite"])
    p_mig.add_argument("--to", dest="to_backend", default=None, choices=["jsonl", "sqlite"])
    p_mig.add_argument("--dry-run", action="store_true", help="Report without writing")
    p_mig.set_defaults(func=cmd_migrate)

    # -- compact -----------------------------------------------------------
    p_comp = sub.add_parser("compact", parents=[_common], help="Compact a store")
    _add_store_arguments(p_comp)
    p_comp.add_argument(
        "--archive-expired", action="store_true",
        help="Archive active records whose expiry has passed first",
    )
    p_comp.add_argument(
        "--drop-expired-archived", action="store_true",
        help="Delete archived records whose expiry has passed",
    )
    p_comp.set_defaults(func=cmd_compact)

    # -- export ------------------------------------------------------------
    p_exp = sub.add_parser("export", parents=[_common], help="Export records as JSONL")
    _add_store_arguments(p_exp)
    p_exp.add_argument("-o", "--output", default=None, help="Output file (default: stdout)")
    p_exp.set_defaults(func=cmd_export)

    # -- import ------------------------------------------------------------
    p_imp = sub.add_parser("import", parents=[_common], help="Import records from JSONL")
    p_imp.add_argument("file", help="JSONL file to import ('-' for stdin)")
    _add_store_arguments(p_imp)
    p_imp.add_argument("--replace", action="store_true", help="Overwrite existing ids")
    p_imp.add_argument(
        "--allow-secrets", action="store_true",
        help="Bypass the secret-likelihood check",
    )
    p_imp.set_defaults(func=cmd_import)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: memrecall <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "backend"):
        args.backend = None

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        # Handle broken pipe gracefully (e.g. memrecall export | head)
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except BackendUnavailableError as e:
        _warn(f"Error: {e}")
        sys.exit(2)
    except StoreError as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
