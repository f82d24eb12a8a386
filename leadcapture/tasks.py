import asyncio
import os

from celery import Celery

from leadcapture import jobs


def _get_broker_url() -> str:
    return os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL", "redis://localhost:6379/0")


celery_app = Celery(
    "leadcapture",
    broker=_get_broker_url(),
    backend=os.getenv("CELERY_RESULT_BACKEND", _get_broker_url()),
)


@celery_app.task
def run_sweep_task() -> dict:
    report = asyncio.run(jobs.run_sweep())
    return vars(report)


@celery_app.task
def send_weekly_digests_task() -> dict:
    report = asyncio.run(jobs.run_weekly_digests())
    return vars(report)


@celery_app.task
def tombstone_expired_task() -> int:
    return asyncio.run(jobs.tombstone_expired_leads())
