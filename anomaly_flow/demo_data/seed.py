"""
Master seeding orchestrator.
Coordinates generation and insertion of all synthetic data.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from anomaly_flow.config import settings
from anomaly_flow.db.models import Anomaly
from anomaly_flow.demo_data.anomalies import generate_anomalies

logger = logging.getLogger(__name__)


async def seed_database(session: AsyncSession, count: Optional[int] = None) -> dict[str, int]:
    """
    Seed the database with synthetic anomalies.

    Skipped when any anomaly already exists.

    Args:
        session: Database session
        count: Number of anomalies, defaults to settings.seed_anomalies_count

    Returns:
        Dictionary with counts of created records
    """
    existing = await session.execute(select(Anomaly.id).limit(1))
    if existing.first() is not None:
        logger.info("Database already contains data, skipping seeding")
        return {"anomalies": 0, "signals": 0}

    count = settings.seed_anomalies_count if count is None else count
    logger.info(f"Generating {count} anomalies...")

    anomalies, signals = generate_anomalies(count=count)
    session.add_all(anomalies)
    await session.flush()
    session.add_all(signals)
    await session.commit()

    logger.info(f"Created {len(anomalies)} anomalies with {len(signals)} source signals")
    return {"anomalies": len(anomalies), "signals": len(signals)}
