#!/usr/bin/env python3
"""
Recognition worker: pulls page jobs off Redis and runs them in a process pool.
"""
import json
import os
import traceback
from multiprocessing import Pool

from config.settings import NUM_OCR_WORKERS, REDIS_OCR_JOB_QUEUE
from models.data_models import RecognitionJob
from services.dependencies import get_job_runner, get_redis_service
from utils.logging_config import setup_image_logging, setup_logging

log = setup_logging("recognition_worker.log", include_default_filters=True)


def parse_job(job_raw: str):
    """Decode a queued job; returns None for anything malformed."""
    try:
        return RecognitionJob.from_dict(json.loads(job_raw))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        log.error(f"❌ Malformed job dropped: {job_raw!r}")
        return None


def worker_task(job_raw: str) -> bool:
    """Process one recognition job inside a pool process."""
    job = parse_job(job_raw)
    if job is None:
        return False

    log.info(f"📥 Job {job.job_id}: {job.kind.value} {job.owner_id}, page {job.page_number or job.page_id}")
    try:
        get_job_runner().run(job)
        return True
    except Exception:
        # Completion could not be recorded; the job is lost
        log.error(f"❌ Job {job.job_id} for page {job.page_id} could not be completed")
        log.error(traceback.format_exc())
        return False


def dispatcher(p, redis_service=None, queue_name: str = REDIS_OCR_JOB_QUEUE, max_jobs: int = None):
    """Dispatch jobs to the worker pool; blocks on the queue."""
    redis_service = redis_service or get_redis_service()
    dispatched = 0
    while max_jobs is None or dispatched < max_jobs:
        popped = redis_service.pop_from_queue(queue_name, timeout=0)
        if not popped:
            continue
        _, job_raw = popped
        if parse_job(job_raw) is None:
            continue
        p.apply_async(worker_task, args=(job_raw,))
        dispatched += 1
    return dispatched


def main():
    """Main recognition worker function."""
    setup_image_logging()

    num_workers = min(NUM_OCR_WORKERS, os.cpu_count() or 1)
    log.info(f"🚀 Spawning {num_workers} recognition worker processes (via Pool)")
    pool = Pool(processes=num_workers, maxtasksperchild=1)
    try:
        dispatcher(pool)
    except KeyboardInterrupt:
        log.info("💥 CTRL+C received, shutting down recognition pool")
        pool.terminate()
        pool.join()
        log.info("✅ Recognition worker pool terminated cleanly")


if __name__ == "__main__":
    main()
