from celery import Task


class AsyncTask(Task):
    """
    Celery task whose ``run`` is a coroutine, executed on the worker process's
    persistent event loop so the async engine's pooled connections stay valid.
    """
    def __call__(self, *args, **kwargs):
        from proctorhub.core.celery_app import get_worker_loop

        loop = get_worker_loop()
        if loop is None:
            raise RuntimeError("Asyncio event loop not initialized for worker process")

        return loop.run_until_complete(self.run(*args, **kwargs))
