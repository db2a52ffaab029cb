"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info -Q emails,search,default

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "airuae_rentals",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.email_tasks",
        "tasks.search_tasks",
        "tasks.booking_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Dubai",
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose the task
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_max_retries=3,

    task_annotations={
        "tasks.email_tasks.send_templated_email": {"rate_limit": "20/s"},
    },

    task_routes={
        "tasks.email_tasks.*": {"queue": "emails"},
        "tasks.search_tasks.*": {"queue": "search"},
        "tasks.booking_tasks.*": {"queue": "default"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Cancel PENDING bookings whose payment never arrived
    "expire-pending-bookings": {
        "task": "tasks.booking_tasks.expire_pending_bookings",
        "schedule": crontab(minute="*/15"),
    },

    # Move CONFIRMED bookings past their end date to COMPLETED
    "complete-finished-bookings": {
        "task": "tasks.booking_tasks.complete_finished_bookings",
        "schedule": crontab(hour=0, minute=30),
    },

    # Reconcile the search index with the database, 03:00 Dubai time
    "sync-search-index": {
        "task": "tasks.search_tasks.sync_all_properties",
        "schedule": crontab(hour=3, minute=0),
    },
}
