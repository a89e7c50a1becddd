#!/usr/bin/env python3
"""
Recognition job runner.

Executes one queued job: fetch the page image, recognize it, then hand the
outcome to the owner's completion handler. Any failure along the way becomes a
failed completion so the owning batch or collection never hangs.
"""
import traceback
from typing import Optional

from models.data_models import JobKind, PageStatus, RecognitionJob, RecognitionResult
from utils.errors import IngestError
from utils.logging_config import setup_logging
from utils.metrics import JobMetrics

log = setup_logging("recognition_worker.log", include_default_filters=True)


class RecognitionJobRunner:
    """Runs recognition jobs and routes their completions by job kind."""

    def __init__(self, store, assets, recognizer, batches, collections, pages, worker: str = "recognition"):
        self.store = store
        self.assets = assets
        self.recognizer = recognizer
        self.batches = batches
        self.collections = collections
        self.pages = pages
        self.worker = worker

    def _mark_recognizing(self, page_id: str) -> None:
        page = self.store.get_page(page_id)
        if page is not None:
            page.status = PageStatus.RECOGNIZING
            self.store.save_page(page)

    def run(self, job: RecognitionJob) -> Optional[RecognitionResult]:
        metrics = JobMetrics(
            worker=self.worker,
            job_id=job.job_id,
            kind=job.kind.value,
            owner_id=job.owner_id,
            page_id=job.page_id,
        )
        result, error = None, None
        log_prefix = f"[{job.kind.value} {job.owner_id}] page {job.page_number or job.page_id}"

        try:
            with metrics.timer("total_processing"):
                try:
                    self._mark_recognizing(job.page_id)
                    with metrics.timer("asset_fetch"):
                        data = self.assets.fetch(job.asset_ref)
                    with metrics.timer("recognition"):
                        result = self.recognizer.recognize(data)
                    log.info(f"{log_prefix} ✅ Recognized ({len(result.text)} chars, {round(result.confidence * 100)}%)")
                except IngestError as e:
                    error = e.message
                    log.warning(f"{log_prefix} ⚠️ Recognition failed: {error}")
                except Exception as e:
                    error = f"Unexpected recognition failure: {e}"
                    log.error(f"{log_prefix} ❌ Unhandled recognition failure")
                    log.error(traceback.format_exc())

                metrics.add_field("engine", result.engine if result else "error")
                metrics.add_field("text_length", len(result.text) if result else 0)
                metrics.add_field("confidence", result.confidence if result else 0.0)
                metrics.add_field("success", error is None)

                with metrics.timer("completion"):
                    self._deliver(job, result, error)
        finally:
            metrics.emit(log)

        return result

    def _deliver(self, job: RecognitionJob, result: Optional[RecognitionResult], error: Optional[str]) -> bool:
        if job.kind == JobKind.BATCH:
            return self.batches.complete_item(job.owner_id, job.page_id, result=result, error=error)
        if job.kind == JobKind.COLLECTION:
            return self.collections.complete_page(job.owner_id, job.page_id, result=result, error=error)
        return self.pages.complete_retry(job.page_id, result, error)
