"""
Expiry sweep: flips lapsed trial and free-access rows to inactive.

Access evaluation already denies lapsed rows, so this only keeps stored
statuses honest for reporting and the UI. Run it from a scheduler:

    python -m services.expiry_service
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from crud.user import UserRepository
from models.subscription import utcnow

logger = logging.getLogger(__name__)


async def expire_lapsed_grants(db: AsyncSession, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    count = await UserRepository(db).expire_lapsed_grants(now)
    if count:
        logger.info(f"Expiry sweep moved {count} user(s) to inactive")
    return count


async def _main() -> int:
    from database import AsyncSessionLocal, init_db

    await init_db()
    async with AsyncSessionLocal() as session:
        return await expire_lapsed_grants(session)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    changed = asyncio.run(_main())
    logger.info(f"Expiry sweep finished: {changed} row(s) updated")
