#!/usr/bin/env python3
"""
Tests for the recognition job runner and explicit page retries.
"""
import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from models.data_models import (
    BatchItemStatus,
    BatchStatus,
    JobKind,
    PageStatus,
    ProcessingStatus,
    RecognitionResult,
    UploadPayload,
)
from services.asset_store import LocalAssetStore
from services.batch_service import BatchOrchestrator
from services.collection_service import CollectionAggregator
from services.job_queue import InMemoryJobQueue
from services.metadata_store import InMemoryMetadataStore
from services.page_service import PageService
from services.recognition_pipeline import RecognitionJobRunner
from utils.errors import NotFoundError, RecognitionError
from utils.metrics import JobMetrics

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class RecordingQueue:
    def __init__(self):
        self.jobs = []

    def enqueue(self, job):
        self.jobs.append(job)
        return job.job_id


class ScriptedRecognizer:
    """Returns text derived from the image bytes; raises for bytes listed in `fail`."""

    def __init__(self, fail=None):
        self.fail = fail or {}

    def recognize(self, data):
        if data in self.fail:
            raise self.fail[data]
        return RecognitionResult(text=data.decode(), confidence=0.8)


def _wire(tmp_path, recognizer=None, queue=None):
    store = InMemoryMetadataStore()
    assets = LocalAssetStore(str(tmp_path / "assets"))
    queue = queue or RecordingQueue()
    batches = BatchOrchestrator(store, assets, queue)
    collections = CollectionAggregator(store, assets, queue)
    pages = PageService(store, queue)
    runner = RecognitionJobRunner(store, assets, recognizer or ScriptedRecognizer(), batches, collections, pages)
    return store, assets, queue, batches, collections, pages, runner


def _images(*contents):
    return [UploadPayload(f"{c}.png", "image/png", c.encode()) for c in contents]


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

def test_batch_jobs_complete_the_batch(tmp_path):
    store, _, queue, batches, _, _, runner = _wire(tmp_path)
    created = batches.create_batch(_images("one", "two"))
    for job in queue.jobs:
        runner.run(job)

    batch = batches.get_batch_status(created["batch_id"])
    assert batch.status == BatchStatus.COMPLETED
    assert batch.completed_files == 2
    page = store.get_page(queue.jobs[0].page_id)
    assert page.status == PageStatus.RECOGNIZED
    assert page.text == "one"


def test_collection_jobs_complete_the_collection(tmp_path):
    _, _, queue, _, collections, _, runner = _wire(tmp_path)
    created = collections.create_collection(_images("first", "second"), title="Script")
    for job in reversed(queue.jobs):
        runner.run(job)

    collection = collections.get_collection_status(created["collection_id"])
    assert collection.processing_status == ProcessingStatus.COMPLETED
    assert collection.accuracy_score == 80
    assert collection.combined_text.startswith("first")


@pytest.mark.parametrize("error", [RecognitionError("Tesseract failed"), ValueError("unexpected")])
def test_recognition_failure_becomes_failed_item(tmp_path, error):
    recognizer = ScriptedRecognizer(fail={b"bad": error})
    store, _, queue, batches, _, _, runner = _wire(tmp_path, recognizer)
    created = batches.create_batch(_images("good", "bad"))
    for job in queue.jobs:
        runner.run(job)

    batch = batches.get_batch_status(created["batch_id"])
    assert batch.status == BatchStatus.COMPLETED
    assert (batch.completed_files, batch.failed_files) == (1, 1)
    failed_item = next(i for i in batch.items if i.filename == "bad.png")
    assert failed_item.status == BatchItemStatus.FAILED
    assert failed_item.error
    assert store.get_page(failed_item.page_id).confidence == 0.0


def test_missing_asset_is_a_failed_completion(tmp_path):
    _, assets, queue, batches, _, _, runner = _wire(tmp_path)
    created = batches.create_batch(_images("gone"))
    assets.delete(queue.jobs[0].asset_ref)
    runner.run(queue.jobs[0])

    batch = batches.get_batch_status(created["batch_id"])
    assert batch.status == BatchStatus.FAILED
    assert batch.failed_files == 1


def test_runner_emits_job_metrics(tmp_path):
    _, _, queue, batches, _, _, runner = _wire(tmp_path)
    batches.create_batch(_images("one"))
    with patch.object(JobMetrics, "emit") as mock_emit:
        runner.run(queue.jobs[0])
    mock_emit.assert_called_once()


def test_job_metrics_event_shape():
    metrics = JobMetrics(worker="recognition", job_id="j1", kind="batch")
    with metrics.timer("recognition"):
        metrics.add_field("success", True)
    event = metrics.to_event()
    assert event["event"] == "recognition_job_complete"
    assert event["kind"] == "batch"
    assert event["metrics"]["success"] is True
    assert "recognition_time_ms" in event["metrics"]


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

def test_retry_updates_page_only(tmp_path):
    recognizer = ScriptedRecognizer(fail={b"flaky": RecognitionError("timeout")})
    store, _, queue, batches, _, pages, runner = _wire(tmp_path, recognizer)
    created = batches.create_batch(_images("flaky"))
    runner.run(queue.jobs[0])
    assert batches.get_batch_status(created["batch_id"]).status == BatchStatus.FAILED

    job = pages.retry_page(queue.jobs[0].page_id)
    assert job.kind == JobKind.RETRY
    assert job.owner_id == created["batch_id"]

    recognizer.fail = {}
    runner.run(job)

    page = store.get_page(job.page_id)
    assert page.status == PageStatus.RECOGNIZED
    assert page.text == "flaky"
    batch = batches.get_batch_status(created["batch_id"])
    assert batch.status == BatchStatus.FAILED
    assert (batch.completed_files, batch.failed_files) == (0, 1)


def test_retry_does_not_touch_combined_text(tmp_path):
    store, _, queue, _, collections, pages, runner = _wire(tmp_path)
    created = collections.create_collection(_images("alpha", "beta"))
    for job in list(queue.jobs):
        runner.run(job)
    before = collections.get_collection_status(created["collection_id"])

    retry = pages.retry_page(queue.jobs[1].page_id)
    runner.run(retry)

    after = collections.get_collection_status(created["collection_id"])
    assert after.combined_text == before.combined_text
    assert after.ocr_completed_pages == 2


def test_retry_unknown_page(tmp_path):
    *_, pages, _ = _wire(tmp_path)
    with pytest.raises(NotFoundError):
        pages.retry_page("missing")
    assert pages.complete_retry("missing", None, "error") is False


# ---------------------------------------------------------------------------
# In-process queue
# ---------------------------------------------------------------------------

def test_inmemory_queue_runs_jobs_end_to_end(tmp_path):
    queue = InMemoryJobQueue(max_workers=3)
    _, _, _, batches, _, _, runner = _wire(tmp_path, queue=queue)
    created = batches.create_batch(_images("a", "b", "c", "d"))
    assert queue.pending() == 4

    queue.set_processor(runner.run)
    queue.shutdown(wait=True)

    batch = batches.get_batch_status(created["batch_id"])
    assert batch.status == BatchStatus.COMPLETED
    assert batch.completed_files == 4


def test_inmemory_queue_survives_processor_errors():
    queue = InMemoryJobQueue(max_workers=1)
    processor = MagicMock(side_effect=RuntimeError("boom"))
    queue.set_processor(processor)
    job = MagicMock(job_id="j1", page_id="p1")
    assert queue.enqueue(job) == "j1"
    queue.shutdown(wait=True)
    processor.assert_called_once_with(job)
