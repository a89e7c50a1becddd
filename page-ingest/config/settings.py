#!/usr/bin/env python3
"""
Configuration settings for the page ingestion system.

- When running standalone, default values are used for all environment variables.
- Any environment variable of the same name overrides its default (API and workers read the same names).
"""
import os

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

def _abs_path(path, base=PROJECT_ROOT):
    if not path:
        raise ValueError("Missing required path for ingestion.")
    if os.path.isabs(path):
        return path
    if not base:
        raise ValueError("Base directory must be provided for relative paths.")
    return os.path.join(base, path)

# Storage Configuration
ASSET_DIR = _abs_path(os.getenv("ASSET_DIR", "assets"))
LOG_DIR = _abs_path(os.getenv("LOG_DIR", "logs"))

# Upload acceptance
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "25"))
ACCEPTED_CONTENT_TYPE_PREFIX = os.getenv("ACCEPTED_CONTENT_TYPE_PREFIX", "image/")

# Redis Configuration
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6380"))
REDIS_OCR_JOB_QUEUE = os.getenv("REDIS_OCR_JOB_QUEUE", "page_recognition_job")
REDIS_KEY_PREFIX = os.getenv("REDIS_KEY_PREFIX", "ingest")
# When false, metadata and jobs stay in-process (development without Redis)
USE_REDIS_STORE = os.getenv("USE_REDIS_STORE", "true").lower() == "true"

# Worker Configuration
NUM_OCR_WORKERS = int(os.getenv("NUM_OCR_WORKERS", "2"))
INMEMORY_QUEUE_THREADS = int(os.getenv("INMEMORY_QUEUE_THREADS", "4"))

# OCR Configuration
MAX_OCR_DIM = int(os.getenv("MAX_OCR_DIM", "3000"))
# Image.MAX_IMAGE_PIXELS = 500_000_000  # Set in recognition client when PIL is imported

# Tesseract OCR configuration
TESSERACT_LANGS = os.getenv("TESSERACT_LANGS", "ara+eng")
TESSERACT_PSM = int(os.getenv("TESSERACT_PSM", "3"))
TESSERACT_OEM = int(os.getenv("TESSERACT_OEM", "1"))
TESSDATA_PREFIX = os.getenv("TESSDATA_PREFIX", "")

# Accuracy scoring
# Regions at or above this confidence count as "high confidence" blocks
HIGH_CONFIDENCE_THRESHOLD = float(os.getenv("HIGH_CONFIDENCE_THRESHOLD", "0.80"))
PAGE_BREAK_MARKER = os.getenv("PAGE_BREAK_MARKER", "\n\n--- page break ---\n\n")
MAX_HEADINGS = int(os.getenv("MAX_HEADINGS", "5"))
# Font size ratio (vs. page average) above which a top-of-page block is a heading candidate
HEADING_SIZE_RATIO = float(os.getenv("HEADING_SIZE_RATIO", "1.4"))
HEADING_MAX_WORDS = int(os.getenv("HEADING_MAX_WORDS", "15"))
HEADING_TOP_FRACTION = float(os.getenv("HEADING_TOP_FRACTION", "0.15"))

# Duplicate detection defaults
DUPLICATE_EXACT_THRESHOLD = float(os.getenv("DUPLICATE_EXACT_THRESHOLD", "0.95"))
DUPLICATE_NEAR_THRESHOLD = float(os.getenv("DUPLICATE_NEAR_THRESHOLD", "0.80"))
DUPLICATE_SIMILAR_THRESHOLD = float(os.getenv("DUPLICATE_SIMILAR_THRESHOLD", "0.60"))

# Listing defaults
LIST_LIMIT = int(os.getenv("LIST_LIMIT", "50"))

# Metrics Configuration
METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"
METRICS_LOG_FILE = os.getenv("METRICS_LOG_FILE", "metrics.jsonl")
METRICS_LOG_TO_STDOUT = os.getenv("METRICS_LOG_TO_STDOUT", "true").lower() == "true"

# Ensure storage directories exist
os.makedirs(ASSET_DIR, exist_ok=True)
os.makedirs(LOG_DIR, exist_ok=True)
