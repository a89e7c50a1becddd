#!/usr/bin/env python3
"""
Page unit operations shared by batches and collections.
"""
import uuid
from typing import Optional

from models.data_models import JobKind, PageStatus, PageUnit, RecognitionJob, RecognitionResult, utcnow
from utils.errors import NotFoundError
from utils.logging_config import setup_logging

log = setup_logging("ingest_pages.log")


def apply_recognition(page: PageUnit, result: Optional[RecognitionResult], error: Optional[str]) -> PageUnit:
    """Copy a recognition outcome onto the page. A failure leaves empty text and confidence 0."""
    page.recognized_at = utcnow()
    if result is None or error:
        page.status = PageStatus.FAILED
        page.text = ""
        page.confidence = 0.0
        page.regions = []
        page.detected_headings = []
        page.error = error or "Recognition returned no result"
        return page

    page.status = PageStatus.RECOGNIZED
    page.text = result.text or ""
    page.confidence = result.confidence
    page.regions = list(result.regions)
    page.detected_headings = list(result.detected_headings)
    page.error = None
    return page


def new_job(kind: JobKind, owner_id: Optional[str], page: PageUnit) -> RecognitionJob:
    return RecognitionJob(
        job_id=uuid.uuid4().hex,
        kind=kind,
        owner_id=owner_id,
        page_id=page.page_id,
        asset_ref=page.asset_ref,
        page_number=page.page_number,
    )


class PageService:
    """Lookup and explicit retry of single pages."""

    def __init__(self, store, queue):
        self.store = store
        self.queue = queue

    def get_page(self, page_id: str) -> PageUnit:
        page = self.store.get_page(page_id)
        if page is None:
            raise NotFoundError("Page", page_id)
        return page

    def retry_page(self, page_id: str) -> RecognitionJob:
        """Queue a fresh recognition of an existing page.

        The retry result only updates the page itself; batch counters,
        collection counters and combined text are left alone.
        """
        page = self.get_page(page_id)
        job = new_job(JobKind.RETRY, page.batch_id or page.collection_id, page)
        self.queue.enqueue(job)
        log.info(f"🔁 Retry queued for page {page_id} (job {job.job_id})")
        return job

    def complete_retry(self, page_id: str, result: Optional[RecognitionResult], error: Optional[str]) -> bool:
        page = self.store.get_page(page_id)
        if page is None:
            log.error(f"⚠️ Retry result for unknown page {page_id} dropped")
            return False
        apply_recognition(page, result, error)
        self.store.save_page(page)
        outcome = "failed" if error else f"ok ({round(page.confidence * 100)}%)"
        log.info(f"✅ Retry for page {page_id} finished: {outcome}")
        return True
