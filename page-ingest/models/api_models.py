#!/usr/bin/env python3
"""
Request and response models for the API endpoints.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str
    message: str
    store: str
    pending_jobs: int


class UploadResult(BaseModel):
    success: bool
    page_id: str
    filename: str
    error: Optional[str] = None


class BatchCreatedResponse(BaseModel):
    batch_id: str
    total_files: int
    uploaded: int
    failed: int
    results: List[UploadResult]


class BatchItemResponse(BaseModel):
    page_id: str
    filename: str
    status: str
    error: Optional[str] = None
    ocr_completed_at: Optional[str] = None


class BatchResponse(BaseModel):
    batch_id: str
    status: str
    total_files: int
    completed_files: int
    failed_files: int
    progress: int
    status_counts: Dict[str, int]
    created_at: str
    updated_at: str
    completed_at: Optional[str] = None
    items: Optional[List[BatchItemResponse]] = None


class BatchListResponse(BaseModel):
    batches: List[BatchResponse]


class BatchActionRequest(BaseModel):
    """Advisory pause / resume / cancel."""
    action: str


class CollectionCreatedResponse(BaseModel):
    collection_id: str
    title: str
    total_pages: int
    processing_status: str


class AccuracyMetricsResponse(BaseModel):
    overall_confidence: int
    high_confidence_blocks_percent: int
    low_confidence_blocks_percent: int
    average_font_size: int
    detected_headings: List[str]


class PageResponse(BaseModel):
    page_id: str
    filename: str
    page_number: Optional[int] = None
    status: str
    text: str
    confidence: float
    error: Optional[str] = None
    recognized_at: Optional[str] = None


class CollectionResponse(BaseModel):
    collection_id: str
    title: str
    total_pages: int
    ocr_completed_pages: int
    processing_status: str
    publication_status: str
    link_type: Optional[str] = None
    linked_id: Optional[str] = None
    accuracy_score: Optional[int] = None
    accuracy_metrics: Optional[AccuracyMetricsResponse] = None
    cover_asset_ref: Optional[str] = None
    review_notes: Optional[str] = None
    combined_text: Optional[str] = None
    created_at: str
    updated_at: str
    completed_at: Optional[str] = None
    published_at: Optional[str] = None
    pages: Optional[List[PageResponse]] = None


class CollectionListResponse(BaseModel):
    collections: List[CollectionResponse]
    total: int
    limit: int
    skip: int


class PublicationRequest(BaseModel):
    status: str
    review_notes: Optional[str] = None


class RemovePagesRequest(BaseModel):
    page_ids: List[str]


class ThresholdsModel(BaseModel):
    exact: float = 0.95
    near_duplicate: float = 0.80
    similar: float = 0.60


class PageTextModel(BaseModel):
    id: str
    text: str = ""
    confidence: float = 0.0


class DuplicatesRequest(BaseModel):
    pages: List[PageTextModel]
    thresholds: Optional[ThresholdsModel] = None


class CollectionDuplicatesRequest(BaseModel):
    thresholds: Optional[ThresholdsModel] = None


class DuplicatePairResponse(BaseModel):
    id1: str
    id2: str
    score: float
    similarity_percent: int
    tier: str


class DuplicateChainResponse(BaseModel):
    members: List[str]
    edges: List[DuplicatePairResponse]


class DuplicateReportResponse(BaseModel):
    duplicates: List[DuplicatePairResponse]
    suggested_removals: List[str]
    chains: List[DuplicateChainResponse]
    summary: Dict[str, int]
    message: Optional[str] = None


class RetryResponse(BaseModel):
    job_id: str
    page_id: str
    kind: str
    owner_id: Optional[str] = None
    message: str = Field(default="Recognition retry queued")
