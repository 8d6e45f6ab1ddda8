import argparse
import asyncio
from collections.abc import Sequence


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run content syncs and knowledge refreshes whose interval has elapsed")
    parser.add_argument("--agent", type=str, help="Only check this agent")
    parser.add_argument("--all", action="store_true", dest="all_agents", help="Check every connected agent")
    parser.add_argument("--skip-knowledge-refresh", action="store_true", help="Only run content syncs")
    parser.add_argument("--log-level", type=str, default=None, help="Override LOG_LEVEL")
    args = parser.parse_args(argv)
    if not args.all_agents and not args.agent:
        parser.error("either --agent or --all must be provided")
    return args


def run_scheduled_syncs(agent_id: str | None = None) -> tuple[int, int]:
    from content_sync.core.time_utils import utcnow
    from content_sync.db.session import get_session_factory
    from content_sync.services.knowledge_ledger import KnowledgeLedger
    from content_sync.services.scheduler import run_due_syncs
    from content_sync.services.sync_orchestrator import SyncOrchestrator

    session_factory = get_session_factory()
    orchestrator = SyncOrchestrator(session_factory, ledger=KnowledgeLedger(session_factory))
    report = asyncio.run(run_due_syncs(orchestrator, session_factory, now=utcnow(), agent_id=agent_id))
    return report.completed, report.failed


def run_knowledge_refresh(agent_id: str | None = None):
    from content_sync.db.session import get_session_factory
    from content_sync.services.knowledge_ledger import KnowledgeLedger

    ledger = KnowledgeLedger(get_session_factory())
    return asyncio.run(ledger.refresh_due_sources(agent_id))


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    from content_sync.core.logging import configure_logging

    configure_logging(args.log_level)
    agent_id = None if args.all_agents else args.agent
    completed, failed = run_scheduled_syncs(agent_id=agent_id)
    print(f"scheduled sync finished; completed={completed} failed={failed}")
    if not args.skip_knowledge_refresh:
        refresh = run_knowledge_refresh(agent_id=agent_id)
        print(
            f"knowledge refresh finished; checked={refresh.checked} changed={refresh.changed} "
            f"unchanged={refresh.unchanged} failed={refresh.failed}"
        )
        failed += refresh.failed
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
