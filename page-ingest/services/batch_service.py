#!/usr/bin/env python3
"""
Batch upload orchestration.

A batch is a bulk upload of unrelated page images. Creating one records every
file and queues its recognition without waiting for it; each recognition
completion is then counted atomically and the last one flips the batch to its
terminal status exactly once.
"""
import uuid
from typing import Any, Dict, List, Optional

from config.settings import LIST_LIMIT
from models.data_models import (
    Batch,
    BatchAction,
    BatchItem,
    BatchItemStatus,
    BatchStatus,
    JobKind,
    PageUnit,
    RecognitionResult,
    UploadPayload,
)
from services.page_service import apply_recognition, new_job
from utils.errors import NotFoundError, ValidationError
from utils.logging_config import setup_logging

log = setup_logging("ingest_batches.log")

# Statuses an action may move a batch out of
_ACTION_RULES = {
    BatchAction.PAUSE: (BatchStatus.PAUSED, (BatchStatus.UPLOADING, BatchStatus.PROCESSING)),
    BatchAction.RESUME: (BatchStatus.PROCESSING, (BatchStatus.PAUSED,)),
    BatchAction.CANCEL: (
        BatchStatus.CANCELLED,
        (BatchStatus.UPLOADING, BatchStatus.PROCESSING, BatchStatus.PAUSED, BatchStatus.COMPLETED, BatchStatus.FAILED),
    ),
}


def select_images(files: List[UploadPayload]) -> List[UploadPayload]:
    """Keep image payloads; reject the request when none qualify."""
    if not files:
        raise ValidationError("No files provided", field="files")
    images = [f for f in files if f.is_image]
    if not images:
        raise ValidationError("No valid image files provided", field="files")
    return images


class BatchOrchestrator:
    """Owns the lifecycle of bulk uploads."""

    def __init__(self, store, assets, queue):
        self.store = store
        self.assets = assets
        self.queue = queue

    def create_batch(self, files: List[UploadPayload]) -> Dict[str, Any]:
        images = select_images(files)
        skipped = len(files) - len(images)

        batch = Batch(batch_id=str(uuid.uuid4()), total_files=len(images))
        self.store.create_batch(batch)
        log.info(f"📦 Batch {batch.batch_id} created with {len(images)} images ({skipped} non-image files skipped)")

        results = [self._accept(batch.batch_id, payload) for payload in images]

        # Recognition may already have finished every item; only an untouched batch moves on
        self.store.transition_batch_status(batch.batch_id, BatchStatus.PROCESSING, (BatchStatus.UPLOADING,))

        return {
            "batch_id": batch.batch_id,
            "total_files": len(images),
            "uploaded": sum(1 for r in results if r["success"]),
            "failed": sum(1 for r in results if not r["success"]),
            "results": results,
        }

    def _accept(self, batch_id: str, payload: UploadPayload) -> Dict[str, Any]:
        """Persist one file, record it and queue its recognition."""
        page_id = str(uuid.uuid4())
        item_recorded = False
        try:
            asset_ref = self.assets.store(payload.data, payload.content_type, filename=payload.filename, folder="uploads")
            page = PageUnit(
                page_id=page_id,
                filename=payload.filename,
                content_type=payload.content_type,
                asset_ref=asset_ref,
                batch_id=batch_id,
            )
            self.store.save_page(page)
            self.store.add_batch_item(batch_id, BatchItem(page_id, payload.filename, BatchItemStatus.PROCESSING_OCR))
            item_recorded = True
            self.queue.enqueue(new_job(JobKind.BATCH, batch_id, page))
            return {"success": True, "page_id": page_id, "filename": payload.filename}
        except Exception as e:
            log.error(f"💥 Failed to accept {payload.filename} for batch {batch_id}: {e}")
            if not item_recorded:
                self.store.add_batch_item(batch_id, BatchItem(page_id, payload.filename, BatchItemStatus.UPLOADING))
            self.complete_item(batch_id, page_id, error=str(e))
            return {"success": False, "page_id": page_id, "filename": payload.filename, "error": str(e)}

    def complete_item(self, batch_id: str, page_id: str, result: Optional[RecognitionResult] = None, error: Optional[str] = None) -> bool:
        """Record one recognition outcome. Returns False when it could not be counted."""
        succeeded = result is not None and not error

        page = self.store.get_page(page_id)
        if page is not None and page.batch_id == batch_id:
            apply_recognition(page, result, error)
            self.store.save_page(page)
        elif page is not None:
            log.error(f"⚠️ Page {page_id} belongs to batch {page.batch_id}, not {batch_id}; completion ignored")
            return False

        reason, counters = self.store.complete_batch_item(batch_id, page_id, succeeded, error)
        if reason != "ok":
            log.error(f"⚠️ Consistency violation in batch {batch_id}: completion for page {page_id} rejected ({reason})")
            return False

        log.info(f"{'✅' if succeeded else '❌'} Batch {batch_id}: page {page_id} {'recognized' if succeeded else 'failed'} "
                 f"[{counters.processed}/{counters.total_files}]")

        if counters.is_done:
            final = BatchStatus.FAILED if counters.failed_files == counters.total_files else BatchStatus.COMPLETED
            if self.store.claim_batch_terminal(batch_id, final):
                log.info(f"🏁 Batch {batch_id} finished: {final.value} "
                         f"({counters.completed_files} ok, {counters.failed_files} failed)")
        return True

    def get_batch_status(self, batch_id: str) -> Batch:
        batch = self.store.get_batch(batch_id)
        if batch is None:
            raise NotFoundError("Batch", batch_id)
        return batch

    def list_batches(self, limit: int = LIST_LIMIT) -> List[Batch]:
        return self.store.list_batches(limit)

    def set_batch_action(self, batch_id: str, action: str) -> Batch:
        """Pause, resume or cancel. Advisory only: queued recognition keeps running."""
        try:
            action = BatchAction(action)
        except ValueError:
            raise ValidationError("Invalid action. Use: pause, resume, or cancel", field="action")

        batch = self.get_batch_status(batch_id)
        new_status, allowed_from = _ACTION_RULES[action]
        if not self.store.transition_batch_status(batch_id, new_status, allowed_from):
            current = self.get_batch_status(batch_id).status
            raise ValidationError(f"Cannot {action.value} a batch that is {current.value}", field="action")

        log.info(f"⏯️ Batch {batch_id}: {batch.status.value} -> {new_status.value}")
        return self.get_batch_status(batch_id)
