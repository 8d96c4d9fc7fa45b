from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown
from proctorhub.core.config import settings
import logging
import asyncio

logging.getLogger('celery.backends.redis').setLevel(logging.ERROR)

# one event loop per worker process; the async engine's pool is bound to it
_WORKER_LOOP = None


@worker_process_init.connect
def init_async_loop(**kwargs):
    """Create the persistent event loop when a worker process starts"""
    global _WORKER_LOOP
    _WORKER_LOOP = asyncio.new_event_loop()
    asyncio.set_event_loop(_WORKER_LOOP)
    logging.info(f"Initialized asyncio event loop for worker process {kwargs.get('sender', 'unknown')}")


@worker_process_shutdown.connect
def shutdown_async_loop(**kwargs):
    global _WORKER_LOOP
    if _WORKER_LOOP:
        _WORKER_LOOP.close()
        asyncio.set_event_loop(None)
        logging.info("Closed asyncio event loop for worker process")


def get_worker_loop():
    """Get the persistent event loop for this worker process."""
    return _WORKER_LOOP


celery_app = Celery(
    "proctorhub_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=['proctorhub.tasks.maintenance']
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    task_routes={
        'proctorhub.tasks.maintenance.*': {'queue': 'maintenance'},
    },

    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,

    task_soft_time_limit=120,
    task_time_limit=300,

    result_expires=3600,
    broker_connection_retry_on_startup=True,

    beat_schedule={
        'sweep-proctoring-sessions': {
            'task': 'sweep_proctoring_sessions',
            'schedule': float(settings.sweep_interval_seconds),
        },
        'prune-signaling-events': {
            'task': 'prune_signaling_events',
            'schedule': float(settings.signal_event_retention_seconds),
        },
    },
)


if __name__ == '__main__':
    celery_app.start()
