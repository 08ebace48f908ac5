"""Filesystem-backed object storage for local runs and tests."""

from __future__ import annotations

import os
from pathlib import Path
from uuid import uuid4


class LocalObjectStorage:
    """Stores objects as files below ``root_dir`` using the key as relative path."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir
        self.root_dir.mkdir(parents=True, exist_ok=True)

    def put(self, key: str, data: bytes) -> None:
        target = self._path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(f".{target.name}.{uuid4().hex}.tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, target)

    def get(self, key: str) -> bytes:
        target = self._path_for(key)
        if not target.is_file():
            raise KeyError(key)
        return target.read_bytes()

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def list_prefixes(self, prefix: str) -> list[str]:
        normalized = prefix.strip("/")
        base = self.root_dir / normalized if normalized else self.root_dir
        if not base.is_dir():
            return []
        head = f"{normalized}/" if normalized else ""
        return sorted(f"{head}{child.name}/" for child in base.iterdir() if child.is_dir())

    def _path_for(self, key: str) -> Path:
        relative = Path(key.lstrip("/"))
        if ".." in relative.parts:
            raise ValueError(f"Invalid object key: {key!r}")
        return self.root_dir / relative
