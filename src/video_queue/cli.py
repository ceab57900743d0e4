import argparse
import asyncio
import json
import signal
import sys

import pydantic

from .config import resolve_config
from .log import configure_logging
from .queue import (
    InvalidTransition,
    JobNotFoundError,
    MaxAttemptsExceeded,
    SQLiteStore,
    ValidationError,
    VideoProcessingQueue,
    load_handlers,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="video-queue", description="Background video processing job queue"
    )
    parser.add_argument("--config", "-c", type=str, help="YAML config file (overrides local.yaml)")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help="Override log level",
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # RUN
    run_parser = subparsers.add_parser("run", help="Run the dispatcher until interrupted")
    run_parser.add_argument("--workers", "-w", type=int, help="Max concurrent jobs")
    run_parser.add_argument("--db", type=str, help="Queue database path")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Submit a job")
    submit_parser.add_argument("--type", "-t", required=True, dest="job_type", help="Job type")
    submit_parser.add_argument("--priority", "-p", type=int, default=1, help="Higher runs first")
    submit_parser.add_argument("--payload", type=str, default="{}", help="JSON object payload")
    submit_parser.add_argument("--max-attempts", type=int, help="Retry budget for this job")
    submit_parser.add_argument("--db", type=str, help="Queue database path")

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show a job, or queue stats")
    status_parser.add_argument("job_id", nargs="?", help="Job id (omit for queue stats)")
    status_parser.add_argument("--db", type=str, help="Queue database path")

    # RETRY
    retry_parser = subparsers.add_parser("retry", help="Retry a dead-lettered job")
    retry_parser.add_argument("job_id", help="Job id")
    retry_parser.add_argument(
        "--extra-attempts", type=int, default=0, help="Raise the retry budget first"
    )
    retry_parser.add_argument("--db", type=str, help="Queue database path")

    # DEAD LETTERS
    dlq_parser = subparsers.add_parser("dead-letters", help="List dead-lettered jobs")
    dlq_parser.add_argument("--limit", type=int, default=50, help="Max jobs to list")
    dlq_parser.add_argument("--db", type=str, help="Queue database path")

    # CLEANUP
    cleanup_parser = subparsers.add_parser("cleanup", help="Delete old completed jobs")
    cleanup_parser.add_argument("--older-than-days", type=int, help="Age cutoff in days")
    cleanup_parser.add_argument("--db", type=str, help="Queue database path")

    return parser


def print_job(view) -> None:
    print("\n" + "=" * 60)
    print(f"JOB {view.id}")
    print("=" * 60)
    print(f"Type:                 {view.type}")
    print(f"Status:               {view.status.value}")
    print(f"Priority:             {view.priority}")
    print(f"Attempts:             {view.attempts}/{view.max_attempts}")
    print(f"Created:              {view.created_at.isoformat()}")
    if view.processed_at:
        print(f"Processed:            {view.processed_at.isoformat()}")
    if view.completed_at:
        print(f"Completed:            {view.completed_at.isoformat()}")
    if view.failed_at:
        print(f"Failed:               {view.failed_at.isoformat()}")
    if view.last_error:
        print(f"Last error:           {view.last_error}")
    print(f"Payload:              {json.dumps(view.payload)}")
    print("=" * 60)


def print_stats(stats) -> None:
    print("\n" + "=" * 60)
    print("QUEUE STATUS")
    print("=" * 60)
    print(f"Pending:              {stats.pending}")
    print(f"Processing:           {stats.processing}")
    print(f"Delayed (retrying):   {stats.delayed}")
    print(f"Failed (dead letter): {stats.failed}")
    print(f"Completed:            {stats.completed}")
    print("=" * 60)


async def run_until_signalled(queue: VideoProcessingQueue) -> None:
    """Run the queue until SIGINT/SIGTERM, then drain in-flight jobs."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    report = await queue.start()
    if report is not None and report.total:
        print(
            f"Recovered {len(report.requeued)} interrupted job(s), "
            f"{len(report.lost)} lost"
        )
    print("Queue running. Press Ctrl+C to stop.")

    await stop.wait()
    print("\nStopping: waiting for in-flight jobs...")
    await queue.stop()


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        config = resolve_config(cli_dict, config_path=args.config)
    except pydantic.ValidationError as e:
        print(f"❌ Invalid configuration: {e}")
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.json_output)

    store = SQLiteStore(config.store.db_path)
    try:
        if args.command == "run":
            try:
                processing = load_handlers(config.handlers)
            except (ImportError, AttributeError, ValueError) as e:
                print(f"❌ Could not load handlers: {e}")
                sys.exit(1)
            queue = VideoProcessingQueue(store, processing, config)
            asyncio.run(run_until_signalled(queue))
            return

        queue = VideoProcessingQueue(store, config=config)

        if args.command == "submit":
            try:
                payload = json.loads(args.payload)
            except json.JSONDecodeError as e:
                print(f"❌ Payload is not valid JSON: {e}")
                sys.exit(1)
            job_id = queue.submit(
                args.job_type,
                payload,
                priority=args.priority,
                max_attempts=args.max_attempts,
            )
            print(f"✅ Submitted job {job_id}")

        elif args.command == "status":
            if args.job_id:
                print_job(queue.get_status(args.job_id))
            else:
                print_stats(queue.get_stats())

        elif args.command == "retry":
            view = queue.retry(args.job_id, extra_attempts=args.extra_attempts)
            print(f"✅ Re-queued job {view.id} (attempt budget {view.max_attempts})")

        elif args.command == "dead-letters":
            views = queue.list_dead_letters(limit=args.limit)
            print("\n" + "=" * 60)
            print(f"DEAD LETTERS ({len(views)})")
            print("=" * 60)
            for view in views:
                failed = view.failed_at.isoformat() if view.failed_at else "-"
                print(f"{view.id}  {view.type:<22} {view.attempts}/{view.max_attempts}  {failed}")
                if view.last_error:
                    print(f"    {view.last_error}")
            print("=" * 60)

        elif args.command == "cleanup":
            deleted = queue.cleanup_old_jobs(args.older_than_days)
            print(f"✅ Deleted {deleted} completed job(s)")

    except (JobNotFoundError, MaxAttemptsExceeded, InvalidTransition, ValidationError) as e:
        print(f"❌ {e}")
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
