#!/usr/bin/env python3
"""
Collection page aggregation.

A collection is one logical multi-page document. Pages are recognized in
parallel; each completion is counted once, and when the count first reaches
the page total the combined text and accuracy score are computed a single
time from whatever page results exist at that moment.
"""
import uuid
from typing import Any, Dict, List, Optional, Tuple

from config.settings import HIGH_CONFIDENCE_THRESHOLD, LIST_LIMIT, MAX_HEADINGS, PAGE_BREAK_MARKER
from models.data_models import (
    AccuracyMetrics,
    Collection,
    DuplicateReport,
    JobKind,
    Linkage,
    LinkType,
    PageText,
    PageUnit,
    ProcessingStatus,
    PublicationStatus,
    RecognitionResult,
    Thresholds,
    UploadPayload,
    utcnow,
)
from processors.duplicate_detector import detect_duplicates
from services.batch_service import select_images
from services.page_service import apply_recognition, new_job
from utils.errors import NotFoundError, ValidationError
from utils.logging_config import setup_logging

log = setup_logging("ingest_collections.log")

DEFAULT_TITLE = "Untitled collection"

_PUBLICATION_RULES = {
    PublicationStatus.DRAFT: (PublicationStatus.PENDING_REVIEW, PublicationStatus.PUBLISHED),
    PublicationStatus.PENDING_REVIEW: (PublicationStatus.DRAFT,),
    PublicationStatus.PUBLISHED: (PublicationStatus.PENDING_REVIEW, PublicationStatus.DRAFT),
}


def combine_page_texts(pages: List[PageUnit], marker: str = PAGE_BREAK_MARKER) -> str:
    """Page texts in page-number order joined by the page break marker."""
    ordered = sorted(pages, key=lambda p: p.page_number or 0)
    return marker.join(p.text or "" for p in ordered)


def accuracy_score(pages: List[PageUnit]) -> int:
    """Mean page confidence as 0-100. Failed pages count as 0."""
    if not pages:
        return 0
    mean = sum(p.confidence or 0.0 for p in pages) / len(pages)
    return round(mean * 100)


def accuracy_metrics(pages: List[PageUnit], threshold: float = HIGH_CONFIDENCE_THRESHOLD, max_headings: int = MAX_HEADINGS) -> AccuracyMetrics:
    regions = [r for p in pages for r in p.regions]
    total = len(regions)
    high = sum(1 for r in regions if r.confidence >= threshold)
    sizes = [r.estimated_font_size for r in regions if r.estimated_font_size]

    headings: List[str] = []
    for page in sorted(pages, key=lambda p: p.page_number or 0):
        for heading in page.detected_headings:
            if heading not in headings:
                headings.append(heading)

    return AccuracyMetrics(
        overall_confidence=accuracy_score(pages),
        high_confidence_blocks_percent=round(high / total * 100) if total else 0,
        low_confidence_blocks_percent=round((total - high) / total * 100) if total else 0,
        average_font_size=round(sum(sizes) / len(sizes)) if sizes else 0,
        detected_headings=headings[:max_headings],
    )


def parse_linkage(link_type: Optional[str], linked_id: Optional[str]) -> Optional[Linkage]:
    if not link_type and not linked_id:
        return None
    if not (link_type and linked_id):
        raise ValidationError("link_type and linked_id must be given together", field="link_type")
    try:
        return Linkage(LinkType(link_type), linked_id)
    except ValueError:
        raise ValidationError("link_type must be 'movie' or 'character'", field="link_type")


class CollectionAggregator:
    """Owns the lifecycle of multi-page collections."""

    def __init__(self, store, assets, queue):
        self.store = store
        self.assets = assets
        self.queue = queue

    def create_collection(self, files: List[UploadPayload], title: Optional[str] = None, linkage: Optional[Linkage] = None) -> Dict[str, Any]:
        images = select_images(files)
        collection_id = str(uuid.uuid4())

        pages = []
        try:
            for number, payload in enumerate(images, start=1):
                asset_ref = self.assets.store(
                    payload.data,
                    payload.content_type,
                    filename=f"page{number}_{payload.filename}",
                    folder=f"collections/{collection_id}",
                )
                page = PageUnit(
                    page_id=str(uuid.uuid4()),
                    filename=payload.filename,
                    content_type=payload.content_type,
                    asset_ref=asset_ref,
                    collection_id=collection_id,
                    page_number=number,
                )
                pages.append(page)
                self.store.save_page(page)
        except Exception as e:
            log.error(f"💥 Collection upload failed at page {len(pages) + 1} of {len(images)}: {e}")
            self._discard(pages)
            raise

        collection = Collection(
            collection_id=collection_id,
            title=title or DEFAULT_TITLE,
            total_pages=len(pages),
            page_ids=[p.page_id for p in pages],
            linkage=linkage,
            cover_asset_ref=pages[0].asset_ref,
        )
        self.store.create_collection(collection)
        log.info(f"📚 Collection {collection_id} created with {len(pages)} pages")

        self.store.update_collection(collection_id, processing_status=ProcessingStatus.PROCESSING_OCR)
        for page in pages:
            self.queue.enqueue(new_job(JobKind.COLLECTION, collection.collection_id, page))

        return {
            "collection_id": collection.collection_id,
            "title": collection.title,
            "total_pages": len(pages),
            "processing_status": ProcessingStatus.PROCESSING_OCR.value,
        }

    def complete_page(self, collection_id: str, page_id: str, result: Optional[RecognitionResult] = None, error: Optional[str] = None) -> bool:
        """Record one page's recognition. Returns False when the completion was not counted."""
        page = self.store.get_page(page_id)
        if page is None or page.collection_id != collection_id:
            log.error(f"⚠️ Consistency violation: page {page_id} is not part of collection {collection_id}")
            return False

        apply_recognition(page, result, error)
        self.store.save_page(page)

        reason, completed, total = self.store.record_page_completion(collection_id, page_id)
        if reason != "ok":
            log.error(f"⚠️ Collection {collection_id}: page {page.page_number} result not counted ({reason})")
            return False

        log.info(f"{'✅' if not error else '❌'} Collection {collection_id}: page {page.page_number} "
                 f"({round(page.confidence * 100)}%) [{completed}/{total}]")

        if completed >= total:
            self._complete(collection_id)
        return True

    def _discard(self, pages: List[PageUnit]) -> None:
        """Remove assets and page records written by a failed upload."""
        for page in pages:
            try:
                self.assets.delete(page.asset_ref)
                self.store.delete_page(page.page_id)
            except Exception as e:
                log.warning(f"⚠️ Could not clean up page {page.page_id} ({page.asset_ref}): {e}")

    def _complete(self, collection_id: str) -> bool:
        """One-shot completion sequence; later calls are no-ops."""
        if not self.store.claim_collection_completion(collection_id):
            return False

        collection = self.store.get_collection(collection_id)
        pages = self._pages(collection)
        metrics = accuracy_metrics(pages)
        self.store.update_collection(
            collection_id,
            combined_text=combine_page_texts(pages),
            accuracy_score=metrics.overall_confidence,
            accuracy_metrics=metrics,
            processing_status=ProcessingStatus.COMPLETED,
            publication_status=PublicationStatus.PENDING_REVIEW,
            completed_at=utcnow(),
        )
        log.info(f"🏁 Collection {collection_id} completed: {len(pages)} pages, accuracy {metrics.overall_confidence}%")
        return True

    def _pages(self, collection: Collection) -> List[PageUnit]:
        pages = []
        for page_id in collection.page_ids:
            page = self.store.get_page(page_id)
            if page is None:
                log.error(f"⚠️ Collection {collection.collection_id} references missing page {page_id}")
                continue
            pages.append(page)
        return pages

    def get_collection_status(self, collection_id: str) -> Collection:
        collection = self.store.get_collection(collection_id)
        if collection is None:
            raise NotFoundError("Collection", collection_id)
        return collection

    def get_pages(self, collection_id: str) -> List[PageUnit]:
        return self._pages(self.get_collection_status(collection_id))

    def list_collections(
        self,
        processing_status: Optional[str] = None,
        publication_status: Optional[str] = None,
        link_type: Optional[str] = None,
        linked_id: Optional[str] = None,
        limit: int = LIST_LIMIT,
        skip: int = 0,
    ) -> Tuple[List[Collection], int]:
        """Filtered, newest-first listing; returns (page of results, total matches)."""
        matches = []
        for c in self.store.list_collections():
            if processing_status and processing_status != "all" and c.processing_status.value != processing_status:
                continue
            if publication_status and publication_status != "all" and c.publication_status.value != publication_status:
                continue
            if link_type and (not c.linkage or c.linkage.link_type.value != link_type):
                continue
            if linked_id and (not c.linkage or c.linkage.linked_id != linked_id):
                continue
            matches.append(c)
        return matches[skip:skip + limit], len(matches)

    def remove_pages(self, collection_id: str, page_ids: List[str]) -> Collection:
        """Drop pages (after duplicate review) and renumber the rest 1..k.

        Combined text is not recomputed; use recompute_collection for that.
        """
        if not page_ids:
            raise ValidationError("Page IDs array is required", field="page_ids")
        collection = self.get_collection_status(collection_id)
        unknown = [pid for pid in page_ids if pid not in collection.page_ids]
        if unknown:
            raise ValidationError(f"Pages not in collection: {', '.join(unknown)}", field="page_ids")

        doomed = set(page_ids)
        remaining = [pid for pid in collection.page_ids if pid not in doomed]
        if not remaining:
            raise ValidationError("A collection must keep at least one page", field="page_ids")

        # Counts only pages that remain and were already recognized
        completed, total = self.store.replace_collection_pages(collection_id, remaining)

        for page_id in doomed:
            page = self.store.get_page(page_id)
            if page is not None:
                self.assets.delete(page.asset_ref)
                self.store.delete_page(page_id)

        for number, page_id in enumerate(remaining, start=1):
            page = self.store.get_page(page_id)
            if page is None:
                continue
            if number == 1 and collection.cover_asset_ref != page.asset_ref:
                self.store.update_collection(collection_id, cover_asset_ref=page.asset_ref)
            if page.page_number != number:
                page.page_number = number
                self.store.save_page(page)

        log.info(f"🗑️ Collection {collection_id}: removed {len(doomed)} pages, {total} remain ({completed} recognized)")

        if collection.processing_status == ProcessingStatus.PROCESSING_OCR and completed >= total:
            self._complete(collection_id)
        return self.get_collection_status(collection_id)

    def recompute_collection(self, collection_id: str) -> Collection:
        """Explicitly rebuild combined text and accuracy from the current pages."""
        collection = self.get_collection_status(collection_id)
        if collection.processing_status != ProcessingStatus.COMPLETED:
            raise ValidationError("Collection has not finished recognition yet", field="processing_status")
        pages = self._pages(collection)
        metrics = accuracy_metrics(pages)
        self.store.update_collection(
            collection_id,
            combined_text=combine_page_texts(pages),
            accuracy_score=metrics.overall_confidence,
            accuracy_metrics=metrics,
        )
        log.info(f"♻️ Collection {collection_id} recomputed: accuracy {metrics.overall_confidence}%")
        return self.get_collection_status(collection_id)

    def set_publication_status(self, collection_id: str, status: str, review_notes: Optional[str] = None) -> Collection:
        try:
            target = PublicationStatus(status)
        except ValueError:
            raise ValidationError("status must be draft, pending_review or published", field="status")

        collection = self.get_collection_status(collection_id)
        if collection.processing_status != ProcessingStatus.COMPLETED and target != PublicationStatus.DRAFT:
            raise ValidationError("Only fully recognized collections can be reviewed or published", field="status")
        if target != collection.publication_status and collection.publication_status not in _PUBLICATION_RULES[target]:
            raise ValidationError(
                f"Cannot move a {collection.publication_status.value} collection to {target.value}", field="status"
            )

        fields = {"publication_status": target}
        if review_notes is not None:
            fields["review_notes"] = review_notes
        if target == PublicationStatus.PUBLISHED:
            fields["published_at"] = utcnow()
        self.store.update_collection(collection_id, **fields)
        return self.get_collection_status(collection_id)

    def detect_collection_duplicates(self, collection_id: str, thresholds: Optional[Thresholds] = None) -> DuplicateReport:
        pages = self.get_pages(collection_id)
        return detect_duplicates([PageText(p.page_id, p.text, p.confidence) for p in pages], thresholds)
