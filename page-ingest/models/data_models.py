#!/usr/bin/env python3
"""
Data models for the page ingestion system.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> str:
    """ISO-8601 UTC timestamp used for every stored date."""
    return datetime.now(timezone.utc).isoformat()


class PageStatus(str, Enum):
    PENDING = "pending"
    RECOGNIZING = "recognizing"
    RECOGNIZED = "recognized"
    FAILED = "failed"


class BatchStatus(str, Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED)


class BatchItemStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING_OCR = "processing_ocr"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"


class ProcessingStatus(str, Enum):
    UPLOADING = "uploading"
    PROCESSING_OCR = "processing_ocr"
    COMPLETED = "completed"
    FAILED = "failed"


class PublicationStatus(str, Enum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    PUBLISHED = "published"


class LinkType(str, Enum):
    MOVIE = "movie"
    CHARACTER = "character"


class JobKind(str, Enum):
    BATCH = "batch"
    COLLECTION = "collection"
    RETRY = "retry"


class DuplicateTier(str, Enum):
    EXACT = "exact"
    NEAR_DUPLICATE = "near-duplicate"
    SIMILAR = "similar"


@dataclass
class UploadPayload:
    """One uploaded file as received from the caller."""
    filename: str
    content_type: str
    data: bytes

    @property
    def is_image(self) -> bool:
        from config.settings import ACCEPTED_CONTENT_TYPE_PREFIX
        return bool(self.content_type) and self.content_type.startswith(ACCEPTED_CONTENT_TYPE_PREFIX)


@dataclass
class BoundingBox:
    x: int
    y: int
    width: int
    height: int


@dataclass
class RecognizedRegion:
    """A block of text found on a page."""
    text: str
    confidence: float
    bounding_box: BoundingBox
    estimated_font_size: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecognizedRegion":
        return cls(
            text=data["text"],
            confidence=data["confidence"],
            bounding_box=BoundingBox(**data["bounding_box"]),
            estimated_font_size=data.get("estimated_font_size"),
        )


@dataclass
class RecognitionResult:
    """What the recognition engine returns for one image."""
    text: str
    confidence: float
    regions: List[RecognizedRegion] = field(default_factory=list)
    detected_headings: List[str] = field(default_factory=list)
    engine: str = "tesseract"
    elapsed_ms: float = 0.0


@dataclass
class PageUnit:
    """One uploaded image plus its derived recognition result."""
    page_id: str
    filename: str
    content_type: str
    asset_ref: str
    batch_id: Optional[str] = None
    collection_id: Optional[str] = None
    page_number: Optional[int] = None
    status: PageStatus = PageStatus.PENDING
    text: str = ""
    confidence: float = 0.0
    regions: List[RecognizedRegion] = field(default_factory=list)
    detected_headings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    uploaded_at: str = field(default_factory=utcnow)
    recognized_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PageUnit":
        data = dict(data)
        data["status"] = PageStatus(data.get("status", PageStatus.PENDING.value))
        data["regions"] = [RecognizedRegion.from_dict(r) for r in data.get("regions") or []]
        return cls(**data)


@dataclass
class BatchItem:
    page_id: str
    filename: str
    status: BatchItemStatus = BatchItemStatus.PENDING
    error: Optional[str] = None
    ocr_completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchItem":
        data = dict(data)
        data["status"] = BatchItemStatus(data["status"])
        return cls(**data)


@dataclass
class BatchCounters:
    """Post-increment snapshot returned by the store's atomic completion step."""
    completed_files: int
    failed_files: int
    total_files: int

    @property
    def processed(self) -> int:
        return self.completed_files + self.failed_files

    @property
    def is_done(self) -> bool:
        return self.processed >= self.total_files


@dataclass
class Batch:
    batch_id: str
    total_files: int
    completed_files: int = 0
    failed_files: int = 0
    status: BatchStatus = BatchStatus.UPLOADING
    items: List[BatchItem] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)
    completed_at: Optional[str] = None

    @property
    def progress(self) -> int:
        if self.total_files <= 0:
            return 0
        return round((self.completed_files + self.failed_files) / self.total_files * 100)

    @property
    def status_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for item in self.items:
            counts[item.status.value] = counts.get(item.status.value, 0) + 1
        return counts

    def to_dict(self, include_items: bool = True) -> Dict[str, Any]:
        data = {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "total_files": self.total_files,
            "completed_files": self.completed_files,
            "failed_files": self.failed_files,
            "progress": self.progress,
            "status_counts": self.status_counts,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Batch":
        return cls(
            batch_id=data["batch_id"],
            total_files=int(data["total_files"]),
            completed_files=int(data.get("completed_files", 0)),
            failed_files=int(data.get("failed_files", 0)),
            status=BatchStatus(data["status"]),
            items=[BatchItem.from_dict(i) for i in data.get("items") or []],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            completed_at=data.get("completed_at"),
        )


@dataclass
class Linkage:
    """Opaque reference to the movie or character a collection belongs to."""
    link_type: LinkType
    linked_id: str


@dataclass
class AccuracyMetrics:
    overall_confidence: int = 0
    high_confidence_blocks_percent: int = 0
    low_confidence_blocks_percent: int = 0
    average_font_size: int = 0
    detected_headings: List[str] = field(default_factory=list)


@dataclass
class Collection:
    collection_id: str
    title: str
    total_pages: int
    page_ids: List[str] = field(default_factory=list)
    ocr_completed_pages: int = 0
    processing_status: ProcessingStatus = ProcessingStatus.UPLOADING
    publication_status: PublicationStatus = PublicationStatus.DRAFT
    linkage: Optional[Linkage] = None
    combined_text: Optional[str] = None
    accuracy_score: Optional[int] = None
    accuracy_metrics: Optional[AccuracyMetrics] = None
    cover_asset_ref: Optional[str] = None
    review_notes: Optional[str] = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)
    completed_at: Optional[str] = None
    published_at: Optional[str] = None

    def to_dict(self, include_text: bool = True) -> Dict[str, Any]:
        data = {
            "collection_id": self.collection_id,
            "title": self.title,
            "total_pages": self.total_pages,
            "page_ids": list(self.page_ids),
            "ocr_completed_pages": self.ocr_completed_pages,
            "processing_status": self.processing_status.value,
            "publication_status": self.publication_status.value,
            "link_type": self.linkage.link_type.value if self.linkage else None,
            "linked_id": self.linkage.linked_id if self.linkage else None,
            "accuracy_score": self.accuracy_score,
            "accuracy_metrics": asdict(self.accuracy_metrics) if self.accuracy_metrics else None,
            "cover_asset_ref": self.cover_asset_ref,
            "review_notes": self.review_notes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "published_at": self.published_at,
        }
        if include_text:
            data["combined_text"] = self.combined_text
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Collection":
        linkage = None
        if data.get("link_type") and data.get("linked_id"):
            linkage = Linkage(LinkType(data["link_type"]), data["linked_id"])
        metrics = data.get("accuracy_metrics")
        return cls(
            collection_id=data["collection_id"],
            title=data["title"],
            total_pages=int(data["total_pages"]),
            page_ids=list(data.get("page_ids") or []),
            ocr_completed_pages=int(data.get("ocr_completed_pages", 0)),
            processing_status=ProcessingStatus(data["processing_status"]),
            publication_status=PublicationStatus(data["publication_status"]),
            linkage=linkage,
            combined_text=data.get("combined_text"),
            accuracy_score=data.get("accuracy_score"),
            accuracy_metrics=AccuracyMetrics(**metrics) if metrics else None,
            cover_asset_ref=data.get("cover_asset_ref"),
            review_notes=data.get("review_notes"),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            completed_at=data.get("completed_at"),
            published_at=data.get("published_at"),
        )


@dataclass
class RecognitionJob:
    """Represents a recognition job on the queue."""
    job_id: str
    kind: JobKind
    owner_id: Optional[str]
    page_id: str
    asset_ref: str
    page_number: Optional[int] = None
    enqueued_at: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecognitionJob":
        data = dict(data)
        data["kind"] = JobKind(data["kind"])
        return cls(**data)


@dataclass
class PageText:
    """Input to duplicate detection: one page's current text."""
    id: str
    text: str
    confidence: float = 0.0


@dataclass
class Thresholds:
    exact: float = 0.95
    near_duplicate: float = 0.80
    similar: float = 0.60


@dataclass
class DuplicatePair:
    id1: str
    id2: str
    score: float
    tier: DuplicateTier

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id1": self.id1,
            "id2": self.id2,
            "score": self.score,
            "similarity_percent": round(self.score * 100),
            "tier": self.tier.value,
        }


@dataclass
class DuplicateChain:
    members: List[str]
    edges: List[DuplicatePair]

    def to_dict(self) -> Dict[str, Any]:
        return {"members": list(self.members), "edges": [e.to_dict() for e in self.edges]}


@dataclass
class DuplicateReport:
    duplicates: List[DuplicatePair] = field(default_factory=list)
    suggested_removals: List[str] = field(default_factory=list)
    chains: List[DuplicateChain] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "exact_duplicates": sum(1 for d in self.duplicates if d.tier == DuplicateTier.EXACT),
            "near_duplicates": sum(1 for d in self.duplicates if d.tier == DuplicateTier.NEAR_DUPLICATE),
            "similar": sum(1 for d in self.duplicates if d.tier == DuplicateTier.SIMILAR),
            "total": len(self.duplicates),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duplicates": [d.to_dict() for d in self.duplicates],
            "suggested_removals": list(self.suggested_removals),
            "chains": [c.to_dict() for c in self.chains],
            "summary": self.summary,
            "message": self.message,
        }
