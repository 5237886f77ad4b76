"""
JSON Document Storage
Read/write whole JSON documents and append to line logs.

Pydantic models are dumped in JSON mode so Decimal, datetime and enum
values survive a write/read round trip unchanged.
"""

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DocumentEncoder(json.JSONEncoder):
    """JSON encoder for Pydantic models and special types."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def serialize(data: Any, indent: int | None = None) -> str:
    """Serialize data (models, lists of models, dicts) to JSON text."""
    return json.dumps(data, cls=DocumentEncoder, indent=indent)


class JsonStore:
    """
    File-backed JSON document store.

    All file access runs in a worker thread so callers on the event
    loop never block on disk I/O.
    """

    async def read_json(self, path: Path, default: T) -> Any:
        """
        Read a JSON document.

        Args:
            path: Document path
            default: Value returned when the file does not exist

        Returns:
            Parsed JSON value or ``default``
        """
        return await asyncio.to_thread(self._read, Path(path), default)

    async def write_json(self, path: Path, data: Any) -> None:
        """Atomically replace a JSON document."""
        await asyncio.to_thread(self._write, Path(path), serialize(data, indent=2))

    async def append_line(self, path: Path, line: str) -> None:
        """Append one line to a log file."""
        await asyncio.to_thread(self._append, Path(path), line)

    @staticmethod
    def _read(path: Path, default: T) -> Any:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return default
        return json.loads(content)

    @staticmethod
    def _write(path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    @staticmethod
    def _append(path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as fh:
            fh.write(f"{line}\n")
