#!/usr/bin/env python3
"""
Dependencies for FastAPI services and recognition workers.
"""
from functools import lru_cache

from config.settings import USE_REDIS_STORE
from services.asset_store import LocalAssetStore
from services.batch_service import BatchOrchestrator
from services.collection_service import CollectionAggregator
from services.job_queue import InMemoryJobQueue, RedisJobQueue
from services.metadata_store import InMemoryMetadataStore, RedisMetadataStore
from services.page_service import PageService
from services.recognition_client import TesseractRecognitionClient
from services.recognition_pipeline import RecognitionJobRunner
from services.redis_service import RedisService


class DependenciesService:
    """Dependencies for FastAPI services as static methods."""

    @staticmethod
    @lru_cache()
    def get_redis_service() -> RedisService:
        return RedisService()

    @staticmethod
    @lru_cache()
    def get_metadata_store():
        """Redis store shared with the worker pool, or a process-local one."""
        if USE_REDIS_STORE:
            return RedisMetadataStore(client=DependenciesService.get_redis_service().client)
        return InMemoryMetadataStore()

    @staticmethod
    @lru_cache()
    def get_job_queue():
        if USE_REDIS_STORE:
            return RedisJobQueue(DependenciesService.get_redis_service())
        return InMemoryJobQueue()

    @staticmethod
    @lru_cache()
    def get_asset_store() -> LocalAssetStore:
        return LocalAssetStore()

    @staticmethod
    @lru_cache()
    def get_recognition_client() -> TesseractRecognitionClient:
        return TesseractRecognitionClient()

    @staticmethod
    @lru_cache()
    def get_batch_orchestrator() -> BatchOrchestrator:
        return BatchOrchestrator(
            DependenciesService.get_metadata_store(),
            DependenciesService.get_asset_store(),
            DependenciesService.get_job_queue(),
        )

    @staticmethod
    @lru_cache()
    def get_collection_aggregator() -> CollectionAggregator:
        return CollectionAggregator(
            DependenciesService.get_metadata_store(),
            DependenciesService.get_asset_store(),
            DependenciesService.get_job_queue(),
        )

    @staticmethod
    @lru_cache()
    def get_page_service() -> PageService:
        return PageService(DependenciesService.get_metadata_store(), DependenciesService.get_job_queue())

    @staticmethod
    @lru_cache()
    def get_job_runner() -> RecognitionJobRunner:
        return RecognitionJobRunner(
            DependenciesService.get_metadata_store(),
            DependenciesService.get_asset_store(),
            DependenciesService.get_recognition_client(),
            DependenciesService.get_batch_orchestrator(),
            DependenciesService.get_collection_aggregator(),
            DependenciesService.get_page_service(),
            worker="recognition" if USE_REDIS_STORE else "inmemory",
        )

    @staticmethod
    def attach_inmemory_processor() -> None:
        """Without Redis there is no worker pool; run jobs in-process instead."""
        queue = DependenciesService.get_job_queue()
        if isinstance(queue, InMemoryJobQueue):
            queue.set_processor(DependenciesService.get_job_runner().run)


# Expose static methods as module-level functions after class definition
get_redis_service = DependenciesService.get_redis_service
get_metadata_store = DependenciesService.get_metadata_store
get_job_queue = DependenciesService.get_job_queue
get_asset_store = DependenciesService.get_asset_store
get_recognition_client = DependenciesService.get_recognition_client
get_batch_orchestrator = DependenciesService.get_batch_orchestrator
get_collection_aggregator = DependenciesService.get_collection_aggregator
get_page_service = DependenciesService.get_page_service
get_job_runner = DependenciesService.get_job_runner
attach_inmemory_processor = DependenciesService.attach_inmemory_processor
