"""
Celery Tasks
Background tasks for the order core.

Each task runs its coroutine with asyncio.run() against a fresh database
engine, since a worker process has no long-lived event loop of its own.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone

from hungerwood.celery_worker import celery_app
from hungerwood.core.config import get_settings
from hungerwood.database import build_engine, build_session_maker
from hungerwood.repositories.sql import SqlAccountRepository, SqlOrderRepository
from hungerwood.services.referral import ReferralService
from hungerwood.services.wallet import WalletLedger

logger = logging.getLogger(__name__)


async def _process_referral_reward(order_id: str) -> dict:
    settings = get_settings()
    engine = build_engine(settings.database_url, echo=settings.database_echo)
    try:
        session_maker = build_session_maker(engine)
        accounts = SqlAccountRepository(session_maker)
        orders = SqlOrderRepository(session_maker)
        referrals = ReferralService(accounts, orders, WalletLedger(accounts), settings)

        order = await orders.get(order_id)
        if order is None:
            return {'success': False, 'order_id': order_id, 'message': 'Order not found'}

        outcome = await referrals.process_reward(order)
        return {
            'success': True,
            'order_id': order_id,
            'rewarded': outcome is not None,
            'outcome': outcome.model_dump(mode='json') if outcome else None,
        }
    finally:
        await engine.dispose()


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def process_referral_reward(self, order_id: str) -> dict:
    """
    Pay referral bonuses for a newly placed order.
    This task runs asynchronously via Celery worker.

    Args:
        order_id: Canonical id of the placed order

    Returns:
        dict: Whether bonuses were paid
    """
    task_id = self.request.id
    logger.info(f"Task {task_id}: Processing referral reward for order {order_id}")
    start_time = time.time()

    result = asyncio.run(_process_referral_reward(order_id))

    elapsed = round(time.time() - start_time, 3)
    result['task_id'] = task_id
    result['processing_time_seconds'] = elapsed
    logger.info(f"Task {task_id}: Order {order_id} referral check done in {elapsed}s")
    return result


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now(timezone.utc).isoformat()
    }
