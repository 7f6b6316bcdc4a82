"""
JSON array and newline-delimited JSON sources.

Array documents are parsed incrementally with ijson so a multi-gigabyte
file never has to fit in memory; NDJSON is read in line batches.
"""

import asyncio
import gzip
import json
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional
import logging

import ijson

from core.exceptions import JSONExtractionError
from ingestion.base import CancellationToken, RowSource
from models.base import SourceType

logger = logging.getLogger(__name__)

READ_SIZE = 64 * 1024


def as_record(value: Any) -> Dict[str, Any]:
    """Objects pass through; anything else is wrapped as ``{"value": v}``."""
    if isinstance(value, dict):
        return value
    return {"value": value}


class JSONRowSource(RowSource):
    """
    Stream records from a JSON file.

    Modes:
        array: the document is a top-level array of records
        ndjson: one JSON value per line, blank lines ignored
    """

    source_type = SourceType.JSON

    def __init__(
        self,
        file_path: str,
        mode: str = "array",
        compression: str = "none",
        resume_state: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        super().__init__(resume_state, cancel_token)
        self.file_path = Path(file_path)
        self.mode = mode
        self.compression = compression

    def _open_binary(self):
        if self.compression == "gzip":
            return gzip.open(self.file_path, "rb")
        return open(self.file_path, "rb")

    async def rows(self) -> AsyncIterator[Dict[str, Any]]:
        if not self.file_path.exists():
            raise JSONExtractionError(
                f"JSON file not found: {self.file_path}",
                context={"file_path": str(self.file_path)}
            )

        logger.info(f"Reading JSON ({self.mode}) from {self.file_path} (skip_rows={self._position})")
        handle = await asyncio.to_thread(self._open_binary)
        try:
            records = self._ndjson(handle) if self.mode == "ndjson" else self._array(handle)
            to_skip = self._position
            async for record in records:
                if to_skip:
                    to_skip -= 1
                    continue
                self._advance()
                yield record
        finally:
            await asyncio.to_thread(handle.close)

    async def _ndjson(self, handle) -> AsyncIterator[Dict[str, Any]]:
        line_number = 0
        while True:
            self.check_cancelled()
            try:
                lines = await asyncio.to_thread(handle.readlines, READ_SIZE)
            except OSError as e:
                raise JSONExtractionError(
                    "Failed to read NDJSON",
                    context={"file_path": str(self.file_path), "line_number": line_number},
                    original_exception=e
                )
            if not lines:
                return
            for raw in lines:
                line_number += 1
                try:
                    text = raw.decode("utf-8-sig" if line_number == 1 else "utf-8").strip()
                    if not text:
                        continue
                    value = json.loads(text)
                except (UnicodeDecodeError, json.JSONDecodeError) as e:
                    raise JSONExtractionError(
                        f"Invalid JSON on line {line_number}",
                        context={"file_path": str(self.file_path), "line_number": line_number},
                        original_exception=e
                    )
                yield as_record(value)

    async def _array(self, handle) -> AsyncIterator[Dict[str, Any]]:
        events = ijson.sendable_list()
        parser = ijson.items_coro(events, "item", use_float=True)
        position = 0
        first = True
        try:
            while True:
                self.check_cancelled()
                data = await asyncio.to_thread(handle.read, READ_SIZE)
                if first and data.startswith(b"\xef\xbb\xbf"):
                    data = data[3:]
                first = False
                if not data:
                    break
                position += len(data)
                parser.send(data)
                for item in events:
                    yield as_record(item)
                del events[:]
            parser.close()
            for item in events:
                yield as_record(item)
            del events[:]
        except (ijson.JSONError, UnicodeDecodeError) as e:
            raise JSONExtractionError(
                f"Invalid JSON near byte {position}",
                context={"file_path": str(self.file_path), "byte_position": position},
                original_exception=e
            )
        except OSError as e:
            raise JSONExtractionError(
                "Failed to read JSON",
                context={"file_path": str(self.file_path), "byte_position": position},
                original_exception=e
            )
