"""
Background token refresh task using APScheduler.

Periodically walks every active member so expiring Strava tokens are
refreshed before an authenticated call needs them.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from runclub.config import get_settings
from runclub.errors import StorageError
from runclub.services.member_store import MemberStore
from runclub.services.token_manager import TokenLifecycleManager, TokenOutcome

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = AsyncIOScheduler()

DEFAULT_REFRESH_INTERVAL_MINUTES = 60


@dataclass
class RefreshSummary:
    total: int = 0
    outcomes: Counter = field(default_factory=Counter)
    failed: list[int] = field(default_factory=list)

    @property
    def valid(self) -> int:
        return self.outcomes[TokenOutcome.cached] + self.outcomes[TokenOutcome.refreshed]

    @property
    def success(self) -> bool:
        return not self.failed


async def refresh_all_tokens(manager: TokenLifecycleManager, store: MemberStore) -> RefreshSummary:
    """
    Resolve a token for every active member.

    Returns:
        RefreshSummary with the outcome counts and the athletes left
        without a usable token
    """
    summary = RefreshSummary()
    accounts = store.get_all_active()

    if not accounts:
        logger.info("No active members to refresh")
        return summary

    for account in accounts:
        resolution = await manager.resolve(account)
        summary.total += 1
        summary.outcomes[resolution.outcome] += 1
        if resolution.access_token is None:
            summary.failed.append(account.external_id)
            logger.warning(
                f"No valid token for athlete {account.external_id} "
                f"({account.display_name}): {resolution.outcome.value}"
            )

    logger.info(
        f"Token refresh completed: {summary.total} members, "
        f"{summary.outcomes[TokenOutcome.refreshed]} refreshed, {len(summary.failed)} failed"
    )
    return summary


async def refresh_tokens_task(manager: TokenLifecycleManager, store: MemberStore):
    """Scheduled job wrapper; errors are logged so the scheduler keeps running."""
    logger.info("Starting scheduled token refresh...")
    try:
        await refresh_all_tokens(manager, store)
    except StorageError as e:
        logger.error(f"Token refresh task failed: {e}")


def start_scheduler(manager: TokenLifecycleManager, store: MemberStore) -> bool:
    """
    Start the background scheduler.

    Returns:
        True if the refresh job was scheduled
    """
    settings = get_settings()

    if not settings.token_refresh_enabled:
        logger.info("Token refresh is disabled in settings")
        return False

    interval = settings.token_refresh_interval_minutes or DEFAULT_REFRESH_INTERVAL_MINUTES

    scheduler.add_job(
        refresh_tokens_task,
        trigger=IntervalTrigger(minutes=interval),
        args=[manager, store],
        id="token_refresh",
        name="Refresh Strava tokens",
        replace_existing=True,
        next_run_time=datetime.now(timezone.utc),  # Run immediately on startup
    )

    if not scheduler.running:
        scheduler.start()
    logger.info(f"Token refresh scheduler started (interval: {interval} minutes)")
    return True


def stop_scheduler():
    """Stop the background scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Token refresh scheduler stopped")
