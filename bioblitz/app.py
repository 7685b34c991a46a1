import argparse
import json
import signal
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from . import __version__
from .config import ConfigError, SyncConfig, load_rubric, parse_date
from .database import ParticipantIdentity, init_database
from .env import load_env
from .ledger import RunLedger, checkpoint_key
from .logger import get_logger
from .normalize import isoformat_z
from .pipeline import CANCELLED, PARTIAL, PipelineError, RunSummary, SyncPipeline
from .retry import RetryError
from .scoring import ScoringEngine
from .storage import RecordStore, StoreWriteError

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2
EXIT_PARTIAL = 3
EXIT_CANCELLED = 130


def print_status(payload: dict) -> None:
    # Always the last line on stdout.
    print(f"STATUS {json.dumps(payload, sort_keys=True, default=str)}", flush=True)


def build_config(args: argparse.Namespace) -> SyncConfig:
    """Environment first, then rubric file, then command-line overrides."""
    config = SyncConfig.from_env()
    if getattr(args, "rubric", None):
        config = config.with_rubric(load_rubric(Path(args.rubric)))

    overrides = {}
    if getattr(args, "scope", None):
        overrides["scope_id"] = args.scope
    if getattr(args, "db", None):
        overrides["db_url"] = args.db
    if getattr(args, "skip_deletions", False):
        overrides["skip_deletions"] = True

    source = {}
    if getattr(args, "d1", None):
        source["d1"] = parse_date(args.d1, "--d1")
    if getattr(args, "d2", None):
        source["d2"] = parse_date(args.d2, "--d2")
    if getattr(args, "users", None):
        source["user_ids"] = tuple(u.strip() for u in args.users.split(",") if u.strip())
    if getattr(args, "project", None):
        source["project_id"] = args.project
    if source:
        overrides["source"] = replace(config.source, **source)

    return replace(config, **overrides) if overrides else config


def cmd_init_db(args: argparse.Namespace) -> int:
    db = args.db or SyncConfig.from_env().db_url
    init_database(db)
    print(f"Database ready: {db}")
    return EXIT_OK


def cmd_sync(args: argparse.Namespace) -> int:
    logger = get_logger(level=args.log_level)
    summary = RunSummary(scope_id=args.scope or "")
    try:
        config = build_config(args)
        summary.scope_id = config.scope_id
        config.validate()
    except ConfigError as e:
        summary.status = "config_error"
        summary.error = str(e)
        logger.error("Invalid configuration", error=str(e))
        print_status(summary.as_status())
        return EXIT_CONFIG

    init_database(config.db_url)
    cancel_event = threading.Event()

    def on_signal(signum, frame):
        logger.warning("Cancellation requested, stopping at the next safe point", signal=signum)
        cancel_event.set()

    previous = signal.signal(signal.SIGINT, on_signal)
    try:
        pipeline = SyncPipeline(config, logger=logger, cancel_event=cancel_event)
        summary = pipeline.run()
        code = EXIT_OK
    except PipelineError as e:
        summary = e.summary
        if summary.status == CANCELLED:
            code = EXIT_CANCELLED
        elif summary.status == PARTIAL:
            code = EXIT_PARTIAL
        else:
            code = EXIT_FATAL
    except Exception as e:
        # Failed before a run could be opened.
        summary.status = "failed"
        summary.error = f"{type(e).__name__}: {e}"
        logger.critical("Sync could not start", error=summary.error)
        code = EXIT_FATAL
    finally:
        signal.signal(signal.SIGINT, previous)

    logger.log_metrics_summary()
    print_status(summary.as_status())
    return code


def cmd_score(args: argparse.Namespace) -> int:
    config = build_config(args)
    store = RecordStore(config.db_url)
    run = RunLedger(store).get_run(args.run_id)
    if run is None:
        raise SystemExit(f"Run not found: {args.run_id}")

    logger = get_logger()
    try:
        result = ScoringEngine(store, replace(config, scope_id=run.scope_id)).score_run(run.run_id, run.scope_id)
    except (StoreWriteError, RetryError, SQLAlchemyError) as e:
        error = f"{type(e).__name__}: {e}"
        logger.error("Rescoring failed", run_id=run.run_id, error=error)
        print_status({
            "status": "failed",
            "run_id": run.run_id,
            "scope": run.scope_id,
            "entries_written": 0,
            "error": error,
        })
        return EXIT_FATAL

    for score in result.scores:
        print(f"{score.participant_id}: {score.total_points}")
    print_status({
        "status": "ok",
        "run_id": run.run_id,
        "scope": run.scope_id,
        "entries_written": result.entries_written,
        "identity_misses": result.unresolved,
        "error": None,
    })
    return EXIT_OK


def cmd_status(args: argparse.Namespace) -> int:
    config = build_config(args)
    store = RecordStore(config.db_url)
    ledger = RunLedger(store)
    scope = args.scope or config.scope_id or None

    if scope:
        watermark = ledger.last_watermark(scope)
        print(f"Checkpoint {checkpoint_key(scope)}: {isoformat_z(watermark) if watermark else 'none'}")

    runs = ledger.recent_runs(scope, limit=args.limit)
    if not runs:
        print("No runs recorded.")
        return EXIT_OK
    print(f"Recent runs ({len(runs)}):\n")
    for run in runs:
        print(f"Run {run.run_id} [{run.scope_id}] {run.status}")
        print(f"  Started: {run.started_at}  Ended: {run.ended_at}")
        print(f"  Watermark: {run.watermark_through}")
        print(f"  Fetched: {run.records_fetched}  Upserted: {run.records_upserted}  "
              f"Deleted: {run.records_deleted}  Entries: {run.entries_written}  "
              f"Identity misses: {run.identity_misses}")
        if run.error:
            print(f"  Error: {run.error}")
        print()
    return EXIT_OK


def load_roster(path: Path, provider: str = "inat") -> List[dict]:
    """
    Read a participant roster.

    Accepts a JSON list of objects with ``participant_id`` and either
    ``external_user_id``/``user_id`` or ``external_username``/``login``.
    """
    if not path.exists():
        raise SystemExit(f"Roster file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise SystemExit("Roster must be a JSON list of objects")

    rows = []
    for i, item in enumerate(data):
        if not isinstance(item, dict) or not item.get("participant_id"):
            raise SystemExit(f"Roster entry {i} lacks participant_id")
        user_id = item.get("external_user_id", item.get("user_id"))
        login = item.get("external_username", item.get("login"))
        rows.append({
            "provider": item.get("provider", provider),
            "participant_id": str(item["participant_id"]),
            "external_user_id": str(user_id) if user_id is not None else None,
            "external_username": str(login).strip().lower() if login else None,
        })
    return rows


def cmd_identities(args: argparse.Namespace) -> int:
    config = build_config(args)
    rows = load_roster(Path(args.file), provider=args.provider)
    init_database(config.db_url)
    store = RecordStore(config.db_url)
    written = store.upsert_rows(ParticipantIdentity, rows, ["provider", "participant_id"])
    print(f"Loaded {written} identities ({args.provider})")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    # Load .env if present (BIOBLITZ_SCOPE_ID, BIOBLITZ_DB_URL, etc.)
    load_env()
    parser = argparse.ArgumentParser(prog="bioblitz", description="BioBlitz observation sync and scoring")
    parser.add_argument("--version", action="store_true", help="Show version")

    subparsers = parser.add_subparsers(dest="command")
    ini = subparsers.add_parser("init-db", help="Create the database tables")
    ini.add_argument("--db", help="Database URL or SQLite path (default: BIOBLITZ_DB_URL)")
    ini.set_defaults(func=cmd_init_db)

    syn = subparsers.add_parser("sync", help="Run one sync+score cycle for a scope")
    syn.add_argument("--scope", help="Scope id (default: BIOBLITZ_SCOPE_ID)")
    syn.add_argument("--db", help="Database URL or SQLite path")
    syn.add_argument("--d1", help="Observed on or after YYYY-MM-DD")
    syn.add_argument("--d2", help="Observed on or before YYYY-MM-DD")
    syn.add_argument("--users", help="Comma-separated upstream user ids or logins")
    syn.add_argument("--project", help="Upstream project id")
    syn.add_argument("--rubric", help="JSON rubric file overriding scoring settings")
    syn.add_argument("--skip-deletions", action="store_true", help="Do not reconcile deletions")
    syn.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                     help="Console log level (default: INFO)")
    syn.set_defaults(func=cmd_sync)

    sco = subparsers.add_parser("score", help="Recompute score entries for an existing run")
    sco.add_argument("--run-id", type=int, required=True, help="Run to rescore")
    sco.add_argument("--db", help="Database URL or SQLite path")
    sco.add_argument("--rubric", help="JSON rubric file overriding scoring settings")
    sco.set_defaults(func=cmd_score)

    sts = subparsers.add_parser("status", help="Show the checkpoint and recent runs")
    sts.add_argument("--scope", help="Limit to one scope")
    sts.add_argument("--db", help="Database URL or SQLite path")
    sts.add_argument("--limit", type=int, default=10, help="Number of runs to show (default: 10)")
    sts.set_defaults(func=cmd_status)

    ids = subparsers.add_parser("identities", help="Load the participant identity roster")
    ids.add_argument("--file", required=True, help="Roster JSON file")
    ids.add_argument("--provider", default="inat", help="Identity provider (default: inat)")
    ids.add_argument("--db", help="Database URL or SQLite path")
    ids.set_defaults(func=cmd_identities)

    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return EXIT_OK

    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_OK

    try:
        return args.func(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG


if __name__ == "__main__":
    sys.exit(main())
