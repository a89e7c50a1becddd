#!/usr/bin/env python3
"""
Text processing utility functions.
"""
import unicodedata
from typing import Set

import regex  # third-party regex with Unicode property support
from ftfy import fix_text

_COMBINING_MARKS = regex.compile(r"\p{Mn}+")
_WHITESPACE = regex.compile(r"\s+")
# Arabic tatweel is purely decorative in scanned print
_TATWEEL = "ـ"


class TextUtils:
    """Text processing utility functions as static methods."""

    @staticmethod
    def fix_mojibake(text: str) -> str:
        """Use ftfy to fix common mojibake/encoding issues before checks."""
        try:
            return fix_text(text)
        except Exception:
            return text

    @staticmethod
    def normalize_text(text: str) -> str:
        """Canonical form used for comparing OCR output.

        Fixes mojibake, drops combining marks (Arabic harakat, Latin accents),
        collapses whitespace and casefolds. Deterministic and independent of the
        order texts are compared in.
        """
        if not text:
            return ""
        text = TextUtils.fix_mojibake(text)
        text = unicodedata.normalize("NFKD", text)
        text = _COMBINING_MARKS.sub("", text).replace(_TATWEEL, "")
        text = unicodedata.normalize("NFC", text)
        return _WHITESPACE.sub(" ", text).strip().casefold()

    @staticmethod
    def word_set(normalized: str, min_length: int = 3) -> Set[str]:
        """Distinct words of at least min_length characters."""
        return {w for w in normalized.split(" ") if len(w) >= min_length}

    @staticmethod
    def char_ngrams(normalized: str, n: int = 3) -> Set[str]:
        """Distinct character n-grams with whitespace removed."""
        compact = _WHITESPACE.sub("", normalized)
        return {compact[i:i + n] for i in range(len(compact) - n + 1)}

    @staticmethod
    def word_count(text: str) -> int:
        return len([w for w in _WHITESPACE.split(text.strip()) if w]) if text else 0

    @staticmethod
    def is_blank(text: str) -> bool:
        return not text or not text.strip()


fix_mojibake = TextUtils.fix_mojibake
normalize_text = TextUtils.normalize_text
word_set = TextUtils.word_set
char_ngrams = TextUtils.char_ngrams
word_count = TextUtils.word_count
is_blank = TextUtils.is_blank
