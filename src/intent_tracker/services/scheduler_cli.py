"""
Task Scheduler CLI for the intent tracker.

Provides command-line interface for scheduler operations including:
- List tasks (with filtering by status/type)
- Show task details and the pending queue with ETAs
- Retry failed tasks and clear completed ones
- Submit a captured page from a JSON file
- Drain the queue in the foreground
"""

import argparse
import json
import logging
import sys

from ..config import Settings
from ..context import AppContext
from .scheduler import TaskScheduler


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return logging.getLogger(__name__)


def _seconds(ms) -> str:
    return f"{(ms or 0) / 1000:.1f}s"


# ============================================================================
# Commands
# ============================================================================

def cmd_list(ctx: AppContext, args: argparse.Namespace) -> None:
    """List tasks, newest first."""
    tasks = ctx.scheduler.list_tasks(status=args.status, task_type=args.type, limit=args.limit)

    if not tasks:
        print("No tasks found.")
        return

    print(f"{'ID':<38} {'Type':<28} {'Status':<12} {'Prio':<5} {'Created':<20}")
    print("-" * 105)

    for t in tasks:
        task_type = (t["task_type"] or "")[:26]
        created = (t.get("created_at") or "")[:19]
        print(f"{t['id']:<38} {task_type:<28} {t['status']:<12} {t['priority']:<5} {created:<20}")

    print(f"\nTotal: {len(tasks)} task(s)")


def cmd_show(ctx: AppContext, args: argparse.Namespace) -> None:
    """Show details of a specific task."""
    task = ctx.scheduler.get_task(args.task_id)
    if not task:
        print(f"Task not found: {args.task_id}")
        sys.exit(1)

    print(json.dumps(task, indent=2, default=str))


def cmd_queue(ctx: AppContext, args: argparse.Namespace) -> None:
    """Show pending tasks in execution order."""
    queue = ctx.scheduler.get_queue()
    if not queue:
        print("Queue is empty.")
        return

    for position, t in enumerate(queue, 1):
        print(f"{position:>3}. {t['task_type']:<28} {t['status']:<12} eta {_seconds(t['eta_ms'])}")


def cmd_stats(ctx: AppContext, args: argparse.Namespace) -> None:
    """Show queue statistics."""
    stats = ctx.scheduler.get_queue_status()
    eta = stats.get("eta", {})

    print("Task Scheduler Statistics")
    print("=" * 30)
    print(f"  Queued:      {stats.get(TaskScheduler.STATUS_QUEUED, 0)}")
    print(f"  Processing:  {stats.get(TaskScheduler.STATUS_PROCESSING, 0)}")
    print(f"  Completed:   {stats.get(TaskScheduler.STATUS_COMPLETED, 0)}")
    print(f"  Failed:      {stats.get(TaskScheduler.STATUS_FAILED, 0)}")
    print(f"  Total:       {stats.get('total', 0)}")
    print(f"  ETA:         {_seconds(eta.get('total_ms'))} ({eta.get('confidence', 'low')} confidence)")


def cmd_eta(ctx: AppContext, args: argparse.Namespace) -> None:
    """Show the estimated time to drain the queue."""
    eta = ctx.scheduler.get_total_eta()
    print(f"{eta['task_count']} task(s), about {_seconds(eta['total_ms'])} ({eta['confidence']} confidence)")
    if args.verbose_durations:
        for task_type, entry in sorted(ctx.scheduler.stats.to_dict().items()):
            print(f"  {task_type:<28} {entry}")


def cmd_retry(ctx: AppContext, args: argparse.Namespace) -> None:
    """Re-queue a failed task."""
    result = ctx.scheduler.retry_task(args.task_id)
    if "error" in result:
        print(f"Error: {result['error']}")
        sys.exit(1)
    print(f"Task {args.task_id} re-queued.")


def cmd_clear(ctx: AppContext, args: argparse.Namespace) -> None:
    """Delete completed tasks."""
    result = ctx.scheduler.clear_completed()
    print(f"Deleted {result['deleted']} completed task(s).")


def cmd_submit(ctx: AppContext, args: argparse.Namespace) -> None:
    """Store a page capture read from a JSON file."""
    try:
        with open(args.page_file, "r", encoding="utf-8") as fh:
            page = json.load(fh)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: cannot read page file: {e}")
        sys.exit(1)

    try:
        result = ctx.engine.submit_page(page)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Page stored: {result['page_id']}")
    for task_type, task_id in result["tasks"].items():
        print(f"  {task_type:<28} {task_id or '(deduplicated)'}")


def cmd_run(ctx: AppContext, args: argparse.Namespace) -> None:
    """Run ready tasks in the foreground until the queue has nothing ready."""
    ran = ctx.scheduler.drain(max_tasks=args.max_tasks)
    print(f"Ran {ran} task(s).")


# ============================================================================
# Main
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Intent Tracker Scheduler CLI - inspect and manage the task queue"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    parser.add_argument("--db-url", help="Database URL (overrides env)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sp_list = subparsers.add_parser("list", aliases=["ls"], help="List tasks")
    sp_list.add_argument("-s", "--status", help="Filter by status")
    sp_list.add_argument("-t", "--type", help="Filter by task type")
    sp_list.add_argument("-l", "--limit", type=int, default=50, help="Max results")

    sp_show = subparsers.add_parser("show", aliases=["get"], help="Show task details")
    sp_show.add_argument("task_id", help="Task ID")

    subparsers.add_parser("queue", help="Show pending tasks with ETAs")
    subparsers.add_parser("stats", help="Show queue statistics")

    sp_eta = subparsers.add_parser("eta", help="Show estimated time to drain the queue")
    sp_eta.add_argument("--durations", dest="verbose_durations", action="store_true",
                        help="Also print per-type duration averages")

    sp_retry = subparsers.add_parser("retry", help="Re-queue a failed task")
    sp_retry.add_argument("task_id", help="Task ID to retry")

    subparsers.add_parser("clear", help="Delete completed tasks")

    sp_submit = subparsers.add_parser("submit", help="Submit a page capture from a JSON file")
    sp_submit.add_argument("page_file", help="Path to page JSON")

    sp_run = subparsers.add_parser("run", help="Run ready tasks in the foreground")
    sp_run.add_argument("--max-tasks", type=int, default=1000, help="Stop after this many tasks")

    return parser


def main(argv=None):
    """Entry point for the scheduler CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    setup_logging(args.verbose)

    settings = Settings.from_env()
    if args.db_url:
        settings.db_url = args.db_url

    ctx = AppContext(settings)

    cmd_map = {
        "list": cmd_list,
        "ls": cmd_list,
        "show": cmd_show,
        "get": cmd_show,
        "queue": cmd_queue,
        "stats": cmd_stats,
        "eta": cmd_eta,
        "retry": cmd_retry,
        "clear": cmd_clear,
        "submit": cmd_submit,
        "run": cmd_run,
    }

    handler = cmd_map.get(args.command)
    try:
        if handler:
            handler(ctx, args)
        else:
            parser.print_help()
    finally:
        ctx.coordinator.cancel()
        ctx.oracle_client.close()


if __name__ == "__main__":
    main()
