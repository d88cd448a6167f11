"""Refresh QuickBooks access tokens that are about to expire.

Meant to be run from a scheduler (cron, systemd timer) through the
``dominus-refresh-tokens`` console script.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import logging as logging_utils
from app.core.config import Settings, get_settings
from app.db import repo
from app.db.session import get_engine, get_session_factory
from app.services.qbo_client import QuickBooksOAuthError, QuickBooksService


logger = logging.getLogger("app.jobs.token_refresh")


async def refresh_expiring_connections(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    now = now or datetime.now(timezone.utc)
    threshold = now + timedelta(seconds=settings.token_refresh_margin_seconds)
    service = QuickBooksService(settings)
    summary = {"checked": 0, "refreshed": 0, "failed": 0}

    async with session_factory() as session:
        connections = await repo.list_connections_due_for_refresh(session, threshold=threshold)
        for connection in connections:
            summary["checked"] += 1
            if not connection.refresh_token_enc:
                continue
            logging_utils.set_request_context(realm_id=connection.realm_id)
            try:
                await service.refresh_connection(session, connection)
            except QuickBooksOAuthError:
                summary["failed"] += 1
                logger.warning(
                    "token_refresh_failed",
                    extra={"environment": connection.environment},
                )
            else:
                summary["refreshed"] += 1
            # Failures record last_error on the row; keep that too.
            await session.commit()

    logger.info("token_refresh_completed", extra=summary)
    return summary


async def _run() -> dict[str, int]:
    settings = get_settings()
    try:
        return await refresh_expiring_connections(get_session_factory(), settings)
    finally:
        await get_engine().dispose()


def main() -> int:
    logging_utils.configure_logging()
    logging_utils.set_request_context(job="token_refresh")
    summary = asyncio.run(_run())
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
