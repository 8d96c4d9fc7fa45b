#!/usr/bin/env python3
"""
Celery worker / beat entry point for the proctoring maintenance tasks.

    celery -A celery_worker worker -Q maintenance
    celery -A celery_worker beat
"""

from proctorhub.core.celery_app import celery_app
import proctorhub.tasks.maintenance  # noqa: F401

if __name__ == '__main__':
    celery_app.start()
