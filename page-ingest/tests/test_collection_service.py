#!/usr/bin/env python3
"""
Tests for collection page aggregation.
"""
import os
import random
import sys
from concurrent.futures import ThreadPoolExecutor

import fakeredis
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from config.settings import PAGE_BREAK_MARKER
from models.data_models import (
    BoundingBox,
    JobKind,
    Linkage,
    LinkType,
    PageStatus,
    PageUnit,
    ProcessingStatus,
    PublicationStatus,
    RecognitionResult,
    RecognizedRegion,
    UploadPayload,
)
from services.collection_service import (
    CollectionAggregator,
    accuracy_metrics,
    accuracy_score,
    combine_page_texts,
    parse_linkage,
)
from services.metadata_store import InMemoryMetadataStore, RedisMetadataStore
from utils.errors import NotFoundError, ValidationError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class RecordingQueue:
    def __init__(self):
        self.jobs = []

    def enqueue(self, job):
        self.jobs.append(job)
        return job.job_id


class MemoryAssets:
    def __init__(self):
        self.blobs = {}

    def store(self, data, content_type, filename=None, folder="uploads"):
        ref = f"{folder}/{len(self.blobs)}-{filename}"
        self.blobs[ref] = data
        return ref

    def fetch(self, ref):
        return self.blobs[ref]

    def delete(self, ref):
        self.blobs.pop(ref, None)


def _region(confidence, font_size=None, text="block"):
    return RecognizedRegion(text, confidence, BoundingBox(0, 0, 100, 20), font_size)


def _result(text, confidence=0.9, regions=None, headings=None):
    return RecognitionResult(text=text, confidence=confidence, regions=regions or [], detected_headings=headings or [])


def _make(n=3, title="Script", linkage=None, store=None):
    store = store or InMemoryMetadataStore()
    assets = MemoryAssets()
    queue = RecordingQueue()
    aggregator = CollectionAggregator(store, assets, queue)
    files = [UploadPayload(f"page{i + 1}.png", "image/png", f"img{i}".encode()) for i in range(n)]
    created = aggregator.create_collection(files, title=title, linkage=linkage)
    return aggregator, store, assets, queue, created["collection_id"]


def _finish_all(aggregator, queue, collection_id, texts=None):
    for i, job in enumerate(queue.jobs):
        text = texts[i] if texts else f"text of page {job.page_number}"
        aggregator.complete_page(collection_id, job.page_id, result=_result(text))


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def test_accuracy_counts_failed_pages_as_zero():
    pages = [
        PageUnit("a", "a.png", "image/png", "x", confidence=0.9),
        PageUnit("b", "b.png", "image/png", "x", confidence=0.95),
        PageUnit("c", "c.png", "image/png", "x", confidence=0.0, status=PageStatus.FAILED),
    ]
    assert accuracy_score(pages) == 62


def test_accuracy_of_no_pages_is_zero():
    assert accuracy_score([]) == 0


def test_combine_orders_by_page_number():
    pages = [
        PageUnit("b", "b.png", "image/png", "x", page_number=2, text="two"),
        PageUnit("a", "a.png", "image/png", "x", page_number=1, text="one"),
    ]
    assert combine_page_texts(pages) == "one" + PAGE_BREAK_MARKER + "two"


def test_accuracy_metrics_block_percentages_fonts_and_headings():
    page1 = PageUnit("a", "a.png", "image/png", "x", page_number=1, confidence=0.9,
                     regions=[_region(0.95, 24), _region(0.85, 12), _region(0.5)],
                     detected_headings=["INT. HOUSE", "ACT ONE"])
    page2 = PageUnit("b", "b.png", "image/png", "x", page_number=2, confidence=0.7,
                     regions=[_region(0.6, 12)],
                     detected_headings=["ACT ONE", "EXT. STREET", "H3", "H4", "H5"])
    metrics = accuracy_metrics([page2, page1])

    assert metrics.overall_confidence == 80
    assert metrics.high_confidence_blocks_percent == 50
    assert metrics.low_confidence_blocks_percent == 50
    assert metrics.average_font_size == 16
    assert metrics.detected_headings == ["INT. HOUSE", "ACT ONE", "EXT. STREET", "H3", "H4"]


def test_accuracy_metrics_without_regions():
    metrics = accuracy_metrics([PageUnit("a", "a.png", "image/png", "x", confidence=0.5)])
    assert metrics.high_confidence_blocks_percent == 0
    assert metrics.low_confidence_blocks_percent == 0
    assert metrics.average_font_size == 0


def test_parse_linkage():
    assert parse_linkage(None, None) is None
    assert parse_linkage("movie", "m1") == Linkage(LinkType.MOVIE, "m1")
    with pytest.raises(ValidationError):
        parse_linkage("movie", None)
    with pytest.raises(ValidationError):
        parse_linkage("studio", "s1")


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def test_create_collection_numbers_pages_and_sets_cover():
    aggregator, store, _, queue, collection_id = _make(n=3)
    collection = aggregator.get_collection_status(collection_id)

    assert collection.total_pages == 3
    assert collection.ocr_completed_pages == 0
    assert collection.processing_status == ProcessingStatus.PROCESSING_OCR
    assert collection.publication_status == PublicationStatus.DRAFT

    pages = aggregator.get_pages(collection_id)
    assert [p.page_number for p in pages] == [1, 2, 3]
    assert collection.cover_asset_ref == pages[0].asset_ref
    assert [j.page_number for j in queue.jobs] == [1, 2, 3]
    assert all(j.kind == JobKind.COLLECTION and j.owner_id == collection_id for j in queue.jobs)


def test_create_collection_defaults_title_and_rejects_non_images():
    store = InMemoryMetadataStore()
    aggregator = CollectionAggregator(store, MemoryAssets(), RecordingQueue())
    created = aggregator.create_collection([UploadPayload("p.png", "image/png", b"x")])
    assert created["title"]

    with pytest.raises(ValidationError):
        aggregator.create_collection([UploadPayload("p.txt", "text/plain", b"x")])


class FailingAssets(MemoryAssets):
    def __init__(self, fail_at):
        super().__init__()
        self.fail_at = fail_at
        self.calls = 0

    def store(self, data, content_type, filename=None, folder="uploads"):
        self.calls += 1
        if self.calls == self.fail_at:
            raise OSError("disk full")
        return super().store(data, content_type, filename=filename, folder=folder)


def test_failed_upload_leaves_nothing_behind():
    store = InMemoryMetadataStore()
    assets = FailingAssets(fail_at=2)
    queue = RecordingQueue()
    aggregator = CollectionAggregator(store, assets, queue)
    files = [UploadPayload(f"page{i}.png", "image/png", b"x") for i in range(3)]

    with pytest.raises(OSError):
        aggregator.create_collection(files)

    assert store.list_collections() == []
    assert assets.blobs == {}
    assert store._pages == {}
    assert queue.jobs == []


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

def test_completion_with_one_failed_page():
    aggregator, store, _, queue, collection_id = _make(n=3)
    aggregator.complete_page(collection_id, queue.jobs[0].page_id, result=_result("first", 0.9))
    aggregator.complete_page(collection_id, queue.jobs[1].page_id, result=_result("second", 0.95))
    aggregator.complete_page(collection_id, queue.jobs[2].page_id, error="Tesseract failed")

    collection = aggregator.get_collection_status(collection_id)
    assert collection.processing_status == ProcessingStatus.COMPLETED
    assert collection.publication_status == PublicationStatus.PENDING_REVIEW
    assert collection.ocr_completed_pages == 3
    assert collection.accuracy_score == 62
    assert collection.combined_text == "first" + PAGE_BREAK_MARKER + "second" + PAGE_BREAK_MARKER
    assert collection.completed_at is not None


@pytest.mark.parametrize("seed", range(10))
def test_combined_text_follows_page_order_not_completion_order(seed):
    aggregator, _, _, queue, collection_id = _make(n=5)
    jobs = list(queue.jobs)
    random.Random(seed).shuffle(jobs)
    for job in jobs:
        aggregator.complete_page(collection_id, job.page_id, result=_result(f"p{job.page_number}"))

    collection = aggregator.get_collection_status(collection_id)
    assert collection.combined_text == PAGE_BREAK_MARKER.join(f"p{i}" for i in range(1, 6))


def test_late_update_does_not_change_combined_text():
    aggregator, store, _, queue, collection_id = _make(n=2)
    _finish_all(aggregator, queue, collection_id, texts=["one", "two"])
    before = aggregator.get_collection_status(collection_id)

    counted = aggregator.complete_page(collection_id, queue.jobs[0].page_id, result=_result("one, rescanned"))
    assert counted is False

    after = aggregator.get_collection_status(collection_id)
    assert after.combined_text == before.combined_text
    assert after.ocr_completed_pages == 2
    assert store.get_page(queue.jobs[0].page_id).text == "one, rescanned"


def test_concurrent_page_completions_complete_once():
    aggregator, store, _, queue, collection_id = _make(n=30)
    claims = []
    original = store.claim_collection_completion

    def spy(cid):
        won = original(cid)
        claims.append(won)
        return won

    store.claim_collection_completion = spy
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda job: aggregator.complete_page(collection_id, job.page_id, result=_result("t")), queue.jobs))

    assert claims.count(True) == 1
    collection = aggregator.get_collection_status(collection_id)
    assert collection.ocr_completed_pages == 30
    assert collection.processing_status == ProcessingStatus.COMPLETED


def test_completion_for_foreign_page_is_ignored():
    aggregator, store, _, queue, collection_id = _make(n=1)
    assert aggregator.complete_page("other-collection", queue.jobs[0].page_id, result=_result("x")) is False
    assert aggregator.complete_page(collection_id, "missing-page", result=_result("x")) is False
    assert aggregator.get_collection_status(collection_id).ocr_completed_pages == 0


# ---------------------------------------------------------------------------
# Page removal and recompute
# ---------------------------------------------------------------------------

def test_remove_page_renumbers_remaining_pages():
    aggregator, store, assets, queue, collection_id = _make(n=4)
    _finish_all(aggregator, queue, collection_id)
    combined = aggregator.get_collection_status(collection_id).combined_text
    page2, page3 = queue.jobs[1].page_id, queue.jobs[2].page_id
    removed_ref = store.get_page(page2).asset_ref

    collection = aggregator.remove_pages(collection_id, [page2])

    assert collection.total_pages == 3
    assert page2 not in collection.page_ids
    assert store.get_page(page2) is None
    assert removed_ref not in assets.blobs
    assert store.get_page(page3).page_number == 2
    assert [p.page_number for p in aggregator.get_pages(collection_id)] == [1, 2, 3]
    assert collection.combined_text == combined


def test_remove_pages_finishes_a_stalled_collection():
    aggregator, _, _, queue, collection_id = _make(n=3)
    aggregator.complete_page(collection_id, queue.jobs[0].page_id, result=_result("one"))
    aggregator.complete_page(collection_id, queue.jobs[1].page_id, result=_result("two"))
    assert aggregator.get_collection_status(collection_id).processing_status == ProcessingStatus.PROCESSING_OCR

    collection = aggregator.remove_pages(collection_id, [queue.jobs[2].page_id])
    assert collection.processing_status == ProcessingStatus.COMPLETED
    assert collection.combined_text == "one" + PAGE_BREAK_MARKER + "two"


def _lua_store():
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return RedisMetadataStore(client=client, prefix="t")


@pytest.mark.parametrize("make_store", [InMemoryMetadataStore, _lua_store], ids=["memory", "redis"])
def test_removing_a_counted_page_waits_for_pages_still_in_flight(make_store):
    aggregator, _, _, queue, collection_id = _make(n=3, store=make_store())
    page1, page2, page3 = (job.page_id for job in queue.jobs)
    aggregator.complete_page(collection_id, page1, result=_result("one"))
    aggregator.complete_page(collection_id, page2, result=_result("two"))

    collection = aggregator.remove_pages(collection_id, [page2])
    assert collection.processing_status == ProcessingStatus.PROCESSING_OCR
    assert (collection.ocr_completed_pages, collection.total_pages) == (1, 2)

    assert aggregator.complete_page(collection_id, page3, result=_result("three")) is True
    collection = aggregator.get_collection_status(collection_id)
    assert collection.processing_status == ProcessingStatus.COMPLETED
    assert (collection.ocr_completed_pages, collection.total_pages) == (2, 2)
    assert collection.combined_text == "one" + PAGE_BREAK_MARKER + "three"


def test_late_completion_of_removed_page_is_ignored():
    aggregator, _, _, queue, collection_id = _make(n=2)
    page1, page2 = (job.page_id for job in queue.jobs)
    aggregator.remove_pages(collection_id, [page2])

    assert aggregator.complete_page(collection_id, page2, result=_result("gone")) is False
    aggregator.complete_page(collection_id, page1, result=_result("one"))
    collection = aggregator.get_collection_status(collection_id)
    assert (collection.ocr_completed_pages, collection.total_pages) == (1, 1)
    assert collection.combined_text == "one"


def test_removing_first_page_moves_cover():
    aggregator, store, assets, queue, collection_id = _make(n=3)
    page1, page2 = queue.jobs[0].page_id, queue.jobs[1].page_id
    old_cover = store.get_page(page1).asset_ref

    collection = aggregator.remove_pages(collection_id, [page1])

    assert collection.cover_asset_ref == store.get_page(page2).asset_ref
    assert old_cover not in assets.blobs


def test_remove_pages_validation():
    aggregator, _, _, queue, collection_id = _make(n=2)
    with pytest.raises(ValidationError):
        aggregator.remove_pages(collection_id, [])
    with pytest.raises(ValidationError):
        aggregator.remove_pages(collection_id, ["not-a-page"])
    with pytest.raises(ValidationError):
        aggregator.remove_pages(collection_id, [job.page_id for job in queue.jobs])
    with pytest.raises(NotFoundError):
        aggregator.remove_pages("missing", ["p"])


def test_recompute_picks_up_page_changes():
    aggregator, store, _, queue, collection_id = _make(n=2)
    _finish_all(aggregator, queue, collection_id, texts=["one", "two"])

    page = store.get_page(queue.jobs[1].page_id)
    page.text = "two, corrected"
    page.confidence = 0.5
    store.save_page(page)

    collection = aggregator.recompute_collection(collection_id)
    assert collection.combined_text == "one" + PAGE_BREAK_MARKER + "two, corrected"
    assert collection.accuracy_score == 70


def test_recompute_requires_completed_collection():
    aggregator, _, _, _, collection_id = _make(n=2)
    with pytest.raises(ValidationError):
        aggregator.recompute_collection(collection_id)


# ---------------------------------------------------------------------------
# Publication and listing
# ---------------------------------------------------------------------------

def test_publication_workflow():
    aggregator, _, _, queue, collection_id = _make(n=1)
    with pytest.raises(ValidationError):
        aggregator.set_publication_status(collection_id, "published")

    _finish_all(aggregator, queue, collection_id)
    published = aggregator.set_publication_status(collection_id, "published", review_notes="looks good")
    assert published.publication_status == PublicationStatus.PUBLISHED
    assert published.published_at is not None
    assert published.review_notes == "looks good"

    assert aggregator.set_publication_status(collection_id, "draft").publication_status == PublicationStatus.DRAFT
    with pytest.raises(ValidationError):
        aggregator.set_publication_status(collection_id, "archived")


def test_list_collections_filters():
    store = InMemoryMetadataStore()
    queue = RecordingQueue()
    aggregator = CollectionAggregator(store, MemoryAssets(), queue)
    png = [UploadPayload("p.png", "image/png", b"x")]
    movie = aggregator.create_collection(png, linkage=Linkage(LinkType.MOVIE, "m1"))
    aggregator.create_collection(png, linkage=Linkage(LinkType.CHARACTER, "c1"))
    aggregator.complete_page(movie["collection_id"], queue.jobs[0].page_id, result=_result("done"))

    found, total = aggregator.list_collections(link_type="movie")
    assert total == 1 and found[0].collection_id == movie["collection_id"]

    found, total = aggregator.list_collections(processing_status="processing_ocr")
    assert total == 1 and found[0].linkage.linked_id == "c1"

    found, total = aggregator.list_collections(publication_status="all", limit=1)
    assert total == 2 and len(found) == 1


def test_collection_duplicates_use_page_texts():
    aggregator, _, _, queue, collection_id = _make(n=3)
    _finish_all(aggregator, queue, collection_id, texts=["same page text", "same page text", "something else entirely"])
    report = aggregator.detect_collection_duplicates(collection_id)
    assert [(d.id1, d.id2) for d in report.duplicates] == [(queue.jobs[0].page_id, queue.jobs[1].page_id)]
    assert report.suggested_removals == [queue.jobs[1].page_id]
