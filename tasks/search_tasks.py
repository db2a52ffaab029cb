"""
tasks/search_tasks.py
Keeps the Elasticsearch properties index in step with the database.
- reindex_property: one listing, queued after writes that failed to index inline
- sync_all_properties: nightly full reconciliation
"""

import asyncio
import logging
import uuid

from sqlalchemy import select

from services.search import router as search
from shared.models.models import Property
from tasks.base import DatabaseTask
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _with_client(fn, *args):
    # Workers run each task in a fresh event loop, so the client cannot be shared
    es = search.create_es_client()
    try:
        return await fn(*args, es=es)
    finally:
        await es.close()


@celery_app.task(bind=True, base=DatabaseTask, max_retries=3, default_retry_delay=60)
def reindex_property(self, property_id: str):
    """Index one property, or drop it from the index if it no longer exists."""
    db = self.get_session()
    try:
        prop = db.execute(
            select(Property).where(Property.id == uuid.UUID(property_id))
        ).scalar_one_or_none()

        if prop is None:
            result = asyncio.run(_with_client(search.delete_property, property_id))
        else:
            result = asyncio.run(_with_client(search.index_property, prop))
    finally:
        db.close()

    if not result["success"]:
        raise self.retry(countdown=60 * (2 ** self.request.retries))
    return result


@celery_app.task(bind=True, base=DatabaseTask)
def sync_all_properties(self):
    """Beat task: nightly bulk reindex."""
    db = self.get_session()
    try:
        properties = db.execute(select(Property)).scalars().all()
        result = asyncio.run(_with_client(search.sync_all_properties, properties))
    finally:
        db.close()

    logger.info(f"Nightly search sync: indexed={result['indexed']} success={result['success']}")
    return {"success": result["success"], "indexed": result["indexed"]}
