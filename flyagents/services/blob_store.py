"""File-backed blob store for snapshot manifest payloads."""

from __future__ import annotations

import json
import uuid
from pathlib import Path

from flyagents.errors import ValidationError

_SUFFIXES = {"application/json": ".json"}


class FileBlobStore:
    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, handle: str) -> Path:
        if not handle or "/" in handle or "\\" in handle or handle.startswith("."):
            raise ValidationError(f"Invalid blob handle: {handle!r}")
        return self.root / handle

    async def store(self, data: bytes, content_type: str = "application/octet-stream") -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        handle = uuid.uuid4().hex + _SUFFIXES.get(content_type, ".bin")
        self._path(handle).write_bytes(data)
        return handle

    async def store_json(self, payload: dict) -> str:
        return await self.store(
            json.dumps(payload, indent=2, default=str).encode(), content_type="application/json"
        )

    async def read(self, handle: str) -> bytes | None:
        path = self._path(handle)
        if not path.exists():
            return None
        return path.read_bytes()
