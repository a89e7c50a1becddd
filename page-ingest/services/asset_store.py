#!/usr/bin/env python3
"""
Asset store for raw page images.
"""
import hashlib
import mimetypes
import os
import re
import time
import uuid

from config.settings import ASSET_DIR
from utils.errors import NotFoundError

_UNSAFE = re.compile(r"[^a-zA-Z0-9.-]")


class LocalAssetStore:
    """Stores images on local disk; an asset ref is the path relative to the root."""

    def __init__(self, root: str = ASSET_DIR):
        self.root = root
        os.makedirs(self.root, exist_ok=True)

    @staticmethod
    def safe_filename(name: str) -> str:
        """Replace anything outside [a-zA-Z0-9.-] with an underscore."""
        return _UNSAFE.sub("_", name or "upload")

    def _path(self, asset_ref: str) -> str:
        path = os.path.normpath(os.path.join(self.root, asset_ref))
        if not path.startswith(os.path.normpath(self.root) + os.sep):
            raise NotFoundError("Asset", asset_ref)
        return path

    def store(self, data: bytes, content_type: str, filename: str = None, folder: str = "uploads") -> str:
        """Write bytes to disk and return the asset reference."""
        if filename:
            name = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{self.safe_filename(filename)}"
        else:
            ext = mimetypes.guess_extension(content_type or "") or ".bin"
            name = f"{hashlib.md5(data).hexdigest()}-{uuid.uuid4().hex[:8]}{ext}"
        asset_ref = f"{folder}/{name}"
        path = self._path(asset_ref)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        return asset_ref

    def fetch(self, asset_ref: str) -> bytes:
        path = self._path(asset_ref)
        if not os.path.exists(path):
            raise NotFoundError("Asset", asset_ref)
        with open(path, "rb") as f:
            return f.read()

    def delete(self, asset_ref: str) -> None:
        path = self._path(asset_ref)
        if os.path.exists(path):
            os.remove(path)
