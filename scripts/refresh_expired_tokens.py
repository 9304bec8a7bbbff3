"""
Refresh expired Strava tokens for every active member.

Run with: python scripts/refresh_expired_tokens.py
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from runclub.config import get_settings
from runclub.errors import RunClubError
from runclub.services.token_manager import TokenOutcome
from runclub.startup import configure_logging, load_context
from runclub.tasks.token_refresh import refresh_all_tokens

logger = logging.getLogger(__name__)


async def refresh_expired_tokens() -> bool:
    settings = get_settings()

    print("\n" + "=" * 50)
    print("  Strava Token Refresh")
    print("=" * 50 + "\n")

    if not settings.strava_oauth_configured:
        print("ERROR: STRAVA_CLIENT_ID and STRAVA_CLIENT_SECRET must be set")
        return False

    try:
        context = await load_context(settings)
        summary = await refresh_all_tokens(context.token_manager, context.member_store)
    except RunClubError as e:
        logger.error(f"Token refresh failed: {e}")
        print(f"\nERROR: {e}")
        return False

    print(f"Members checked:  {summary.total}")
    print(f"Still valid:      {summary.outcomes[TokenOutcome.cached]}")
    print(f"Refreshed:        {summary.outcomes[TokenOutcome.refreshed]}")
    print(f"Failed:           {len(summary.failed)}")
    for external_id in summary.failed:
        print(f"  - athlete {external_id}")

    print("\n" + "=" * 50)
    return summary.success


def main():
    configure_logging(get_settings().log_level)
    ok = asyncio.run(refresh_expired_tokens())
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
