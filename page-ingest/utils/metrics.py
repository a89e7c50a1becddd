#!/usr/bin/env python3
"""
Performance metrics for recognition jobs.

Lightweight timing instrumentation emitted as one structured JSON event per job.
"""
import time
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional


class Timer:
    """
    Context manager for timing operations with high-resolution timing.

    Usage:
        with Timer() as t:
            # do work
            pass
        elapsed_ms = t.elapsed_ms
    """

    def __init__(self):
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self.elapsed_ms: float = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        if self.start_time is not None:
            self.elapsed_ms = (self.end_time - self.start_time) * 1000.0
        return False


class JobMetrics:
    """
    Tracks metrics for one recognition job.

    Usage:
        metrics = JobMetrics(worker="recognition", job_id="abc123", kind="batch")

        with metrics.timer("total_processing"):
            with metrics.timer("asset_fetch"):
                data = assets.fetch(ref)
            metrics.add_field("confidence", 0.91)

        metrics.emit(log)
    """

    event_name = "recognition_job_complete"

    def __init__(self, worker: str, job_id: str, **kwargs):
        """
        Args:
            worker: Worker name (e.g. "recognition", "inmemory")
            job_id: Unique job identifier
            **kwargs: Extra top-level fields (kind, page_id, owner_id)
        """
        self.worker = worker
        self.job_id = job_id
        self.extra_fields = kwargs
        self.timers: Dict[str, Timer] = {}
        self.metrics: Dict[str, Any] = {}

    def timer(self, name: str) -> Timer:
        """Named timer; reported as <name>_time_ms."""
        if name not in self.timers:
            self.timers[name] = Timer()
        return self.timers[name]

    def add_field(self, name: str, value: Any):
        self.metrics[name] = value

    def finalize(self) -> Dict[str, Any]:
        final_metrics = dict(self.metrics)
        for name, timer in self.timers.items():
            final_metrics[f"{name}_time_ms"] = round(timer.elapsed_ms, 3)
        return final_metrics

    def to_event(self) -> Dict[str, Any]:
        event = {
            "event": self.event_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "worker": self.worker,
            "job_id": self.job_id,
            "metrics": self.finalize(),
        }
        event.update(self.extra_fields)
        return event

    def emit(self, logger: logging.Logger):
        """Emit the JSON event to the logger and, if configured, the metrics file."""
        try:
            from config.settings import METRICS_ENABLED, METRICS_LOG_TO_STDOUT, METRICS_LOG_FILE

            if not METRICS_ENABLED:
                return

            event = self.to_event()

            if METRICS_LOG_TO_STDOUT:
                logger.info(f"METRICS: {json.dumps(event)}")

            if METRICS_LOG_FILE:
                try:
                    with open(METRICS_LOG_FILE, 'a') as f:
                        f.write(json.dumps(event) + '\n')
                except OSError as e:
                    logger.debug(f"Failed to write metrics to file: {e}")

        except Exception as e:
            # Metrics never fail a job
            logger.debug(f"Failed to emit metrics: {e}")
