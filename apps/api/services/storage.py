"""Local file storage for uploaded report assets."""

from __future__ import annotations

import asyncio
import os
import uuid
from pathlib import Path
from typing import Optional

from config import settings
from services.errors import AssetMissing, InvalidAsset


class AssetStorage:
    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.ASSET_STORAGE_DIR).resolve()

    def _resolve(self, reference: str) -> Path:
        path = (self.root / reference).resolve()
        if self.root not in path.parents:
            raise InvalidAsset("Invalid storage reference")
        return path

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as handle:
            handle.write(data)

    @staticmethod
    def _read(path: Path) -> bytes:
        with open(path, "rb") as handle:
            return handle.read()

    async def store(self, data: bytes, kind: str, filename: Optional[str]) -> str:
        """Persist bytes and return the reference used to read them back."""
        suffix = os.path.splitext(filename or "")[1].lower()
        reference = f"{kind}/{uuid.uuid4().hex}{suffix}"
        await asyncio.to_thread(self._write, self._resolve(reference), data)
        return reference

    async def read(self, reference: str) -> bytes:
        path = self._resolve(reference)
        try:
            return await asyncio.to_thread(self._read, path)
        except FileNotFoundError as exc:
            raise AssetMissing(f"Stored asset {reference} is no longer available") from exc


_storage: Optional[AssetStorage] = None


def get_asset_storage() -> AssetStorage:
    global _storage
    if _storage is None:
        _storage = AssetStorage()
    return _storage
