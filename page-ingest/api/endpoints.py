"""
API endpoints for batches, collections, duplicate review and health using FastAPI.
"""
import logging
from contextlib import contextmanager
from typing import List, Optional

from config.settings import LIST_LIMIT, MAX_UPLOAD_MB, USE_REDIS_STORE
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from models.api_models import (
    BatchActionRequest,
    BatchCreatedResponse,
    BatchListResponse,
    BatchResponse,
    CollectionCreatedResponse,
    CollectionDuplicatesRequest,
    CollectionListResponse,
    CollectionResponse,
    DuplicateReportResponse,
    DuplicatesRequest,
    HealthResponse,
    PageResponse,
    PublicationRequest,
    RemovePagesRequest,
    RetryResponse,
    ThresholdsModel,
)
from models.data_models import Collection, PageText, Thresholds, UploadPayload
from processors.duplicate_detector import detect_duplicates
from services.batch_service import BatchOrchestrator
from services.collection_service import CollectionAggregator, parse_linkage
from services.dependencies import get_batch_orchestrator, get_collection_aggregator, get_job_queue, get_page_service
from services.page_service import PageService
from utils.errors import IngestError, ValidationError
from utils.logging_config import setup_logging

log = setup_logging("ingest_api.log", logging.DEBUG)

router = APIRouter(prefix="/api/v1", tags=["ingest"])


@contextmanager
def translate_errors(action: str):
    """Map domain errors to their HTTP status; anything else is a 500."""
    try:
        yield
    except IngestError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
    except HTTPException:
        raise
    except Exception as e:
        log.error(f"{action} failed: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"{action} failed: {str(e)}")


def read_uploads(files: List[UploadFile]) -> List[UploadPayload]:
    limit = MAX_UPLOAD_MB * 1024 * 1024
    payloads = []
    for f in files or []:
        data = f.file.read()
        if len(data) > limit:
            raise ValidationError(f"{f.filename} exceeds the {MAX_UPLOAD_MB} MB upload limit", field="files")
        payloads.append(UploadPayload(f.filename or "upload", f.content_type or "", data))
    return payloads


def to_thresholds(model: Optional[ThresholdsModel]) -> Optional[Thresholds]:
    if model is None:
        return None
    return Thresholds(exact=model.exact, near_duplicate=model.near_duplicate, similar=model.similar)


def collection_response(collection: Collection, pages=None, include_text: bool = True) -> CollectionResponse:
    data = collection.to_dict(include_text=include_text)
    if pages is not None:
        data["pages"] = [PageResponse(**p.to_dict()) for p in pages]
    return CollectionResponse(**data)


@router.get("/health", response_model=HealthResponse)
def health_check(queue=Depends(get_job_queue)):
    """Health check endpoint."""
    store = "redis" if USE_REDIS_STORE else "memory"
    try:
        pending = queue.pending()
    except Exception as e:
        log.warning(f"⚠️ Job queue unavailable: {e}")
        return HealthResponse(status="degraded", message=f"Job queue unavailable: {e}", store=store, pending_jobs=0)
    return HealthResponse(status="healthy", message="API is running", store=store, pending_jobs=pending)


# Batches

@router.post("/batches", response_model=BatchCreatedResponse, status_code=201)
def create_batch(
        files: List[UploadFile] = File(default=[]),
        service: BatchOrchestrator = Depends(get_batch_orchestrator),
):
    """Accept a bulk upload; recognition runs in the background."""
    with translate_errors("Batch upload"):
        result = service.create_batch(read_uploads(files))
        log.info(f"📦 Batch {result['batch_id']}: {result['uploaded']} queued, {result['failed']} failed")
        return result


@router.get("/batches", response_model=BatchListResponse)
def list_batches(limit: int = LIST_LIMIT, service: BatchOrchestrator = Depends(get_batch_orchestrator)):
    with translate_errors("Batch listing"):
        return {"batches": [b.to_dict(include_items=False) for b in service.list_batches(limit)]}


@router.get("/batches/{batch_id}", response_model=BatchResponse)
def get_batch(batch_id: str, service: BatchOrchestrator = Depends(get_batch_orchestrator)):
    with translate_errors("Batch lookup"):
        return service.get_batch_status(batch_id).to_dict()


@router.patch("/batches/{batch_id}", response_model=BatchResponse)
def update_batch(batch_id: str, req: BatchActionRequest, service: BatchOrchestrator = Depends(get_batch_orchestrator)):
    with translate_errors("Batch action"):
        return service.set_batch_action(batch_id, req.action).to_dict()


# Collections

@router.post("/collections", response_model=CollectionCreatedResponse, status_code=201)
def create_collection(
        files: List[UploadFile] = File(default=[]),
        title: Optional[str] = Form(default=None),
        link_type: Optional[str] = Form(default=None),
        linked_id: Optional[str] = Form(default=None),
        service: CollectionAggregator = Depends(get_collection_aggregator),
):
    """Upload the ordered pages of one document."""
    with translate_errors("Collection upload"):
        linkage = parse_linkage(link_type, linked_id)
        return service.create_collection(read_uploads(files), title=title, linkage=linkage)


@router.get("/collections", response_model=CollectionListResponse)
def list_collections(
        processing_status: Optional[str] = None,
        publication_status: Optional[str] = None,
        link_type: Optional[str] = None,
        linked_id: Optional[str] = None,
        limit: int = LIST_LIMIT,
        skip: int = 0,
        service: CollectionAggregator = Depends(get_collection_aggregator),
):
    with translate_errors("Collection listing"):
        collections, total = service.list_collections(
            processing_status=processing_status,
            publication_status=publication_status,
            link_type=link_type,
            linked_id=linked_id,
            limit=limit,
            skip=skip,
        )
        return CollectionListResponse(
            collections=[collection_response(c, include_text=False) for c in collections],
            total=total,
            limit=limit,
            skip=skip,
        )


@router.get("/collections/{collection_id}", response_model=CollectionResponse)
def get_collection(collection_id: str, service: CollectionAggregator = Depends(get_collection_aggregator)):
    with translate_errors("Collection lookup"):
        collection = service.get_collection_status(collection_id)
        return collection_response(collection, pages=service.get_pages(collection_id))


@router.patch("/collections/{collection_id}", response_model=CollectionResponse)
def update_collection(collection_id: str, req: PublicationRequest, service: CollectionAggregator = Depends(get_collection_aggregator)):
    with translate_errors("Publication update"):
        return collection_response(service.set_publication_status(collection_id, req.status, req.review_notes))


@router.post("/collections/{collection_id}/recompute", response_model=CollectionResponse)
def recompute_collection(collection_id: str, service: CollectionAggregator = Depends(get_collection_aggregator)):
    with translate_errors("Collection recompute"):
        return collection_response(service.recompute_collection(collection_id))


@router.post("/collections/{collection_id}/duplicates", response_model=DuplicateReportResponse)
def collection_duplicates(
        collection_id: str,
        req: Optional[CollectionDuplicatesRequest] = None,
        service: CollectionAggregator = Depends(get_collection_aggregator),
):
    with translate_errors("Duplicate detection"):
        thresholds = to_thresholds(req.thresholds) if req else None
        return service.detect_collection_duplicates(collection_id, thresholds).to_dict()


@router.delete("/collections/{collection_id}/pages", response_model=CollectionResponse)
def remove_pages(collection_id: str, req: RemovePagesRequest, service: CollectionAggregator = Depends(get_collection_aggregator)):
    with translate_errors("Page removal"):
        collection = service.remove_pages(collection_id, req.page_ids)
        return collection_response(collection, pages=service.get_pages(collection_id))


# Pages and ad-hoc duplicate checks

@router.post("/duplicates", response_model=DuplicateReportResponse)
def duplicates(req: DuplicatesRequest):
    """Compare arbitrary page texts without storing anything."""
    with translate_errors("Duplicate detection"):
        pages = [PageText(p.id, p.text, p.confidence) for p in req.pages]
        return detect_duplicates(pages, to_thresholds(req.thresholds)).to_dict()


@router.post("/pages/{page_id}/retry", response_model=RetryResponse, status_code=202)
def retry_page(page_id: str, service: PageService = Depends(get_page_service)):
    with translate_errors("Recognition retry"):
        job = service.retry_page(page_id)
        return RetryResponse(job_id=job.job_id, page_id=job.page_id, kind=job.kind.value, owner_id=job.owner_id)
