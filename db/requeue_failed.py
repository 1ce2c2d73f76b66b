import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional
from sqlalchemy import select, update

from bi_assistant.db import AsyncSessionLocal
from bi_assistant.models import QUEUE_FAILED, QUEUE_PENDING, QueueItem

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger("requeue_failed")


async def requeue(limit: int, tenant_id: Optional[str] = None, since_hours: Optional[float] = None, dry_run: bool = False) -> int:
    """
    Move terminally failed queue items back to pending with a fresh attempt
    budget. Items whose status changed meanwhile are left alone.
    """
    start_time = time.time()
    now = datetime.now(timezone.utc)

    async with AsyncSessionLocal() as db:
        query = select(QueueItem).where(QueueItem.status == QUEUE_FAILED)
        if tenant_id:
            query = query.where(QueueItem.tenant_id == tenant_id)
        if since_hours:
            query = query.where(QueueItem.updated_at >= now - timedelta(hours=since_hours))
        result = await db.execute(query.order_by(QueueItem.created_at.asc()).limit(limit))
        items = result.scalars().all()

        if not items:
            logger.info("No failed queue items to requeue")
            return 0

        logger.info(f"Found {len(items)} failed queue items")

        if dry_run:
            for item in items:
                logger.info(f"Would requeue: id={item.id}, phone={item.phone_number}, error={item.error_message}")
            return 0

        requeued = 0
        for item in items:
            outcome = await db.execute(
                update(QueueItem)
                .where(QueueItem.id == item.id, QueueItem.status == QUEUE_FAILED)
                .values(status=QUEUE_PENDING, attempt_count=0, next_retry_at=now, error_message=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if outcome.rowcount == 1:
                requeued += 1

    duration = time.time() - start_time
    logger.info(f"Requeue complete: requeued={requeued}, duration={duration:.2f}s")
    return requeued


async def main():
    """Main function"""
    import argparse
    ap = argparse.ArgumentParser(description="Move failed queue items back to pending")
    ap.add_argument("--limit", type=int, default=100, help="Maximum number of items to requeue")
    ap.add_argument("--tenant", default=None, help="Only requeue items of this tenant")
    ap.add_argument("--since-hours", type=float, default=None, help="Only items that failed in the last N hours")
    ap.add_argument("--dry-run", action="store_true", help="Show what would be requeued without changing anything")
    args = ap.parse_args()

    await requeue(args.limit, args.tenant, args.since_hours, args.dry_run)

if __name__ == "__main__":
    asyncio.run(main())
