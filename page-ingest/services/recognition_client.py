#!/usr/bin/env python3
"""
Recognition client: turns page image bytes into text, regions and confidence.

Wraps Tesseract through pytesseract. The engine is treated as a black box that
may be slow and may fail; every failure surfaces as a RecognitionError.
"""
import io
import os
import time
from typing import Dict, List, Tuple

import numpy as np
import pytesseract
from config.settings import (
    HEADING_MAX_WORDS,
    HEADING_SIZE_RATIO,
    HEADING_TOP_FRACTION,
    MAX_HEADINGS,
    MAX_OCR_DIM,
    TESSDATA_PREFIX,
    TESSERACT_LANGS,
    TESSERACT_OEM,
    TESSERACT_PSM,
)
from models.data_models import BoundingBox, RecognitionResult, RecognizedRegion
from PIL import Image, UnidentifiedImageError
from utils.errors import RecognitionError
from utils.text_utils import word_count

Image.MAX_IMAGE_PIXELS = 500_000_000

try:
    Resample = Image.Resampling  # Pillow ≥ 10
except AttributeError:
    Resample = Image  # Pillow < 10

DEFAULT_FONT_SIZE = 16


def preprocess_image(data: bytes) -> np.ndarray:
    """Decode, downscale very large scans and convert to grayscale."""
    try:
        pil_image = Image.open(io.BytesIO(data))
        pil_image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise RecognitionError(f"Unreadable image: {e}")

    w, h = pil_image.size
    if max(w, h) > MAX_OCR_DIM:
        scale = MAX_OCR_DIM / max(w, h)
        pil_image = pil_image.resize((int(w * scale), int(h * scale)), Resample.LANCZOS)

    return np.array(pil_image.convert("L"))


def estimate_font_size(height: int, line_count: int) -> int:
    """Font size is roughly three quarters of the line height."""
    line_height = height / max(1, line_count)
    return round(line_height * 0.75)


def _confidence(raw) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return -1.0
    return value


def word_confidence(data: Dict[str, List]) -> float:
    """Mean confidence (0..1) over the non-empty words Tesseract reported."""
    confs = [
        _confidence(c) / 100.0
        for word, c in zip(data.get("text", []), data.get("conf", []))
        if word and str(word).strip() and _confidence(c) >= 0
    ]
    return sum(confs) / len(confs) if confs else 0.0


def regions_from_data(data: Dict[str, List]) -> List[RecognizedRegion]:
    """Group Tesseract word rows (image_to_data DICT output) into block regions."""
    blocks: Dict[Tuple[int, int], Dict] = {}
    order: List[Tuple[int, int]] = []

    for i, word in enumerate(data.get("text", [])):
        conf = _confidence(data["conf"][i])
        if conf < 0 or not word or not str(word).strip():
            continue
        key = (int(data["page_num"][i]), int(data["block_num"][i]))
        if key not in blocks:
            blocks[key] = {"lines": {}, "confs": [], "boxes": []}
            order.append(key)
        block = blocks[key]
        line_key = (int(data["par_num"][i]), int(data["line_num"][i]))
        block["lines"].setdefault(line_key, []).append(str(word).strip())
        block["confs"].append(conf / 100.0)
        left, top = int(data["left"][i]), int(data["top"][i])
        block["boxes"].append((left, top, left + int(data["width"][i]), top + int(data["height"][i])))

    regions = []
    for key in order:
        block = blocks[key]
        lines = [" ".join(words) for _, words in sorted(block["lines"].items())]
        x0 = min(b[0] for b in block["boxes"])
        y0 = min(b[1] for b in block["boxes"])
        x1 = max(b[2] for b in block["boxes"])
        y1 = max(b[3] for b in block["boxes"])
        regions.append(RecognizedRegion(
            text="\n".join(lines),
            confidence=sum(block["confs"]) / len(block["confs"]),
            bounding_box=BoundingBox(x=x0, y=y0, width=x1 - x0, height=y1 - y0),
            estimated_font_size=estimate_font_size(y1 - y0, len(lines)),
        ))
    return regions


def detect_headings(regions: List[RecognizedRegion], limit: int = MAX_HEADINGS) -> List[str]:
    """Large-type blocks near the top of the page, top to bottom."""
    sized = [r for r in regions if r.estimated_font_size]
    if not sized:
        return []
    avg_size = sum(r.estimated_font_size for r in sized) / len(sized) or DEFAULT_FONT_SIZE

    min_y = min(r.bounding_box.y for r in regions)
    max_y = max(r.bounding_box.y + r.bounding_box.height for r in regions)
    top_limit = (max_y - min_y) * HEADING_TOP_FRACTION

    headings = []
    for region in sorted(sized, key=lambda r: (r.bounding_box.y, -r.bounding_box.x)):
        is_top = (region.bounding_box.y - min_y) < top_limit
        is_large = region.estimated_font_size / avg_size >= HEADING_SIZE_RATIO
        if is_top and is_large and word_count(region.text) <= HEADING_MAX_WORDS:
            headings.append(region.text.replace("\n", " "))
    return headings[:limit]


class TesseractRecognitionClient:
    """Recognition client backed by a local Tesseract install."""

    engine = "tesseract"

    def __init__(self, langs: str = TESSERACT_LANGS, psm: int = TESSERACT_PSM, oem: int = TESSERACT_OEM):
        self.langs = langs
        self.config = f"--psm {psm} --oem {oem}"
        if TESSDATA_PREFIX:
            os.environ.setdefault("TESSDATA_PREFIX", TESSDATA_PREFIX)

    def _run_tesseract(self, np_image: np.ndarray) -> Dict[str, List]:
        return pytesseract.image_to_data(
            np_image,
            lang=self.langs,
            config=self.config,
            output_type=pytesseract.Output.DICT,
        )

    def recognize(self, data: bytes) -> RecognitionResult:
        """Recognize one page image; raises RecognitionError on any engine failure."""
        if not data:
            raise RecognitionError("Empty image payload")

        np_image = preprocess_image(data)
        start_time = time.perf_counter()
        try:
            raw = self._run_tesseract(np_image)
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, RuntimeError) as e:
            raise RecognitionError(f"Tesseract failed: {e}")
        elapsed_ms = (time.perf_counter() - start_time) * 1000.0

        regions = regions_from_data(raw)
        confidence = word_confidence(raw)

        return RecognitionResult(
            text="\n\n".join(r.text for r in regions),
            confidence=max(0.0, min(1.0, confidence)),
            regions=regions,
            detected_headings=detect_headings(regions),
            engine=self.engine,
            elapsed_ms=elapsed_ms,
        )
