"""
Celery Worker Configuration

Referral rewards are processed out of the request path in staging and
production. Redis is both the broker and the result backend.

Run with:
    celery -A hungerwood.celery_worker worker -Q rewards,celery --loglevel=info
"""

from celery import Celery

from hungerwood.core.config import get_settings, setup_logging

settings = get_settings()

celery_app = Celery(
    'hungerwood_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['hungerwood.tasks'],
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Reward tasks touch wallets; keep them on their own queue
    task_routes={
        'hungerwood.tasks.process_referral_reward': {'queue': 'rewards'},
    },
    task_time_limit=120,
    task_soft_time_limit=90,

    # One reward at a time per worker process
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.celery_concurrency,

    result_expires=3600,

    # Reward tasks are idempotent; redelivery after a worker crash is expected
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    broker_connection_retry_on_startup=True,
)

setup_logging()


if __name__ == '__main__':
    celery_app.start()
