#!/usr/bin/env python3
"""
Recognition job queues.

Jobs are handed off after the synchronous part of an upload returns; the
completion is a separate event handled by the recognition job runner.
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

from config.settings import INMEMORY_QUEUE_THREADS, REDIS_OCR_JOB_QUEUE
from models.data_models import RecognitionJob
from services.redis_service import RedisService
from utils.logging_config import setup_logging

log = setup_logging("ingest_jobs.log")


class RedisJobQueue:
    """Pushes jobs onto the Redis list consumed by the recognition worker pool."""

    def __init__(self, redis_service: RedisService = None, queue_name: str = REDIS_OCR_JOB_QUEUE):
        self.redis = redis_service or RedisService()
        self.queue_name = queue_name

    def enqueue(self, job: RecognitionJob) -> str:
        self.redis.push_to_queue(self.queue_name, job.to_dict())
        log.debug(f"📤 Queued {job.kind.value} job {job.job_id} for page {job.page_id}")
        return job.job_id

    def pending(self) -> int:
        return self.redis.get_queue_length(self.queue_name)


class InMemoryJobQueue:
    """Thread-pool queue for running without Redis.

    Jobs enqueued before a processor is attached are held and flushed once it is set.
    """

    def __init__(self, max_workers: int = INMEMORY_QUEUE_THREADS):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="recognition")
        self._processor: Optional[Callable[[RecognitionJob], None]] = None
        self._held: List[RecognitionJob] = []
        self._lock = threading.Lock()

    def set_processor(self, processor: Callable[[RecognitionJob], None]) -> None:
        with self._lock:
            self._processor = processor
            held, self._held = self._held, []
        for job in held:
            self._executor.submit(self._process, job)

    def enqueue(self, job: RecognitionJob) -> str:
        with self._lock:
            if self._processor is None:
                self._held.append(job)
                return job.job_id
        self._executor.submit(self._process, job)
        return job.job_id

    def _process(self, job: RecognitionJob) -> None:
        try:
            self._processor(job)
        except Exception:
            log.exception(f"❌ Unhandled failure in job {job.job_id} for page {job.page_id}")

    def pending(self) -> int:
        with self._lock:
            return len(self._held)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
