"""
CLI commands for inspecting and operating strategy versions.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from dotenv import load_dotenv

from deepcurrent.engine import StrategyEngine
from deepcurrent.errors import EngineError
from deepcurrent.settings import EngineSettings
from deepcurrent.storage.json_repository import JsonFileRepository

logger = logging.getLogger(__name__)


def _engine(args: argparse.Namespace) -> StrategyEngine:
    settings = EngineSettings.from_env()
    if args.storage:
        settings.storage_path = Path(args.storage)
    repository = JsonFileRepository(settings.storage_path)
    return StrategyEngine.create(repository, settings)


def _run(args: argparse.Namespace, fn: Callable[[StrategyEngine], Awaitable[int]]) -> int:
    try:
        return asyncio.run(fn(_engine(args)))
    except (EngineError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def register_topic_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register topic CLI commands."""

    # topic-create
    create_parser = subparsers.add_parser(
        "topic-create",
        help="Create a topic and give it an initial active strategy",
    )
    create_parser.add_argument("title", help="Topic title")
    create_parser.add_argument("--description", "-d", default="", help="Topic description")
    create_parser.add_argument("--user", help="Owning user ID")
    create_parser.add_argument(
        "--no-bootstrap",
        action="store_true",
        help="Leave the topic on the default strategy",
    )
    create_parser.set_defaults(func=cmd_topic_create)

    # topic-list
    list_parser = subparsers.add_parser("topic-list", help="List topics")
    list_parser.add_argument("--user", help="Only topics owned by this user")
    list_parser.add_argument("--search", "-s", help="Filter by title/description substring")
    list_parser.set_defaults(func=cmd_topic_list)


def register_strategy_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register strategy lifecycle CLI commands."""

    # strategy-show
    show_parser = subparsers.add_parser(
        "strategy-show",
        help="Show a topic's versions with metrics and its evolution log",
    )
    show_parser.add_argument("topic_id", help="Topic ID")
    show_parser.add_argument("--json", action="store_true", help="Print the raw overview")
    show_parser.set_defaults(func=cmd_strategy_show)

    # strategy-promote
    promote_parser = subparsers.add_parser("strategy-promote", help="Promote a version to active")
    promote_parser.add_argument("topic_id", help="Topic ID")
    promote_parser.add_argument("version", type=int, help="Version to promote")
    promote_parser.add_argument("--reason", "-r", default="", help="Reason for the audit log")
    promote_parser.set_defaults(func=cmd_strategy_promote)

    # strategy-archive
    archive_parser = subparsers.add_parser("strategy-archive", help="Archive a candidate version")
    archive_parser.add_argument("topic_id", help="Topic ID")
    archive_parser.add_argument("version", type=int, help="Candidate version to archive")
    archive_parser.add_argument("--reason", "-r", default="", help="Reason for the audit log")
    archive_parser.set_defaults(func=cmd_strategy_archive)

    # strategy-rollout
    rollout_parser = subparsers.add_parser(
        "strategy-rollout",
        help="Set a candidate's rollout percentage",
    )
    rollout_parser.add_argument("topic_id", help="Topic ID")
    rollout_parser.add_argument("version", type=int, help="Candidate version")
    rollout_parser.add_argument("percentage", type=int, help="Rollout percentage (0-100)")
    rollout_parser.set_defaults(func=cmd_strategy_rollout)

    # strategy-rollback
    rollback_parser = subparsers.add_parser(
        "strategy-rollback",
        help="Restore the config that preceded the active version",
    )
    rollback_parser.add_argument("topic_id", help="Topic ID")
    rollback_parser.add_argument("--reason", "-r", default="", help="Reason for the audit log")
    rollback_parser.set_defaults(func=cmd_strategy_rollback)


def register_evolution_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register evolution log CLI commands."""

    # evolutions
    log_parser = subparsers.add_parser("evolutions", help="Show recent evolution log entries")
    log_parser.add_argument("topic_id", help="Topic ID")
    log_parser.add_argument("--limit", "-n", type=int, default=5, help="Number of entries")
    log_parser.set_defaults(func=cmd_evolutions)

    # evolution-purge
    purge_parser = subparsers.add_parser(
        "evolution-purge",
        help="Delete evolution log entries older than the retention window",
    )
    purge_parser.add_argument(
        "--days",
        type=int,
        help="Retention in days (defaults to DEEPCURRENT_LOG_RETENTION_DAYS)",
    )
    purge_parser.add_argument("--topic", help="Only purge this topic")
    purge_parser.set_defaults(func=cmd_evolution_purge)


def cmd_topic_create(args: argparse.Namespace) -> int:
    """Create a topic, bootstrapping its first strategy unless told not to."""

    async def run(engine: StrategyEngine) -> int:
        topic = await engine.topics.create_topic(
            args.title, description=args.description, user_id=args.user
        )
        print(f"Created topic {topic.topic_id}: {topic.title}")
        if not args.no_bootstrap:
            version = await engine.rollout.bootstrap(topic.topic_id)
            print(f"  Active strategy: v{version.version}")
        return 0

    return _run(args, run)


def cmd_topic_list(args: argparse.Namespace) -> int:
    async def run(engine: StrategyEngine) -> int:
        if args.search:
            topics = await engine.topics.search_topics(args.search, user_id=args.user)
        else:
            topics = await engine.topics.list_topics(user_id=args.user)
        if not topics:
            print("No topics found")
            return 0
        for topic in topics:
            active = f"v{topic.active_version}" if topic.active_version else "default"
            print(f"{topic.topic_id}  {topic.title}  (strategy: {active})")
        return 0

    return _run(args, run)


def cmd_strategy_show(args: argparse.Namespace) -> int:
    async def run(engine: StrategyEngine) -> int:
        overview = await engine.dashboard.get_overview(args.topic_id)
        if args.json:
            print(json.dumps(overview, indent=2, default=str))
            return 0

        topic = overview["topic"]
        print(f"Topic: {topic['title']} ({topic['topic_id']})")
        active = overview["active_version"]
        print(f"Active version: {f'v{active}' if active else 'none (default strategy)'}")
        print()
        for row in overview["versions"]:
            line = f"  v{row['version']:<3} {row['status']:<9} {row['rollout_percentage']:>3}%"
            if row["corrupt"]:
                line += "  [corrupt config]"
            elif row["metrics"]["total_episodes"]:
                m = row["metrics"]
                line += (
                    f"  episodes={m['total_episodes']} save_rate={m['avg_save_rate']:.2f} "
                    f"followups={m['avg_followup_count']:.1f}"
                )
            print(line)
        return 0

    return _run(args, run)


def cmd_strategy_promote(args: argparse.Namespace) -> int:
    async def run(engine: StrategyEngine) -> int:
        version = await engine.rollout.promote(args.topic_id, args.version, reason=args.reason)
        print(f"Promoted v{version.version} to active for topic {args.topic_id}")
        return 0

    return _run(args, run)


def cmd_strategy_archive(args: argparse.Namespace) -> int:
    async def run(engine: StrategyEngine) -> int:
        version = await engine.rollout.archive(args.topic_id, args.version, reason=args.reason)
        print(f"Archived v{version.version} for topic {args.topic_id}")
        return 0

    return _run(args, run)


def cmd_strategy_rollout(args: argparse.Namespace) -> int:
    async def run(engine: StrategyEngine) -> int:
        version = await engine.rollout.update_rollout(args.topic_id, args.version, args.percentage)
        print(f"v{version.version} rollout set to {version.rollout_percentage}%")
        return 0

    return _run(args, run)


def cmd_strategy_rollback(args: argparse.Namespace) -> int:
    async def run(engine: StrategyEngine) -> int:
        version = await engine.rollout.rollback(args.topic_id, reason=args.reason)
        print(f"Rolled back topic {args.topic_id}: v{version.version} is active")
        return 0

    return _run(args, run)


def cmd_evolutions(args: argparse.Namespace) -> int:
    async def run(engine: StrategyEngine) -> int:
        entries = await engine.dashboard.recent_evolutions(args.topic_id, limit=args.limit)
        if not entries:
            print(f"No evolution history for topic {args.topic_id}")
            return 0
        for entry in entries:
            source = f"v{entry['from_version']}" if entry["from_version"] is not None else "-"
            print(
                f"{entry['timestamp']}  {entry['kind']:<10} {source} -> v{entry['to_version']}  "
                f"{entry['reason']}"
            )
        return 0

    return _run(args, run)


def cmd_evolution_purge(args: argparse.Namespace) -> int:
    async def run(engine: StrategyEngine) -> int:
        days = args.days if args.days is not None else engine.settings.evolution_log_retention_days
        if days is None:
            print("No retention configured; pass --days", file=sys.stderr)
            return 1
        removed = await engine.audit_log.purge(retention_days=days, topic_id=args.topic)
        print(f"Purged {removed} evolution log entries older than {days} days")
        return 0

    return _run(args, run)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deepcurrent",
        description="Inspect and operate strategy versions",
    )
    parser.add_argument(
        "--storage",
        help="Storage directory (defaults to DEEPCURRENT_STORAGE_PATH or ~/.deepcurrent)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_topic_commands(subparsers)
    register_strategy_commands(subparsers)
    register_evolution_commands(subparsers)
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
