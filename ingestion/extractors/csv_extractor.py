"""
Delimited file source read in chunks with pandas.
"""

import asyncio
import gzip
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional
import logging

import pandas as pd

from core.config import settings
from core.exceptions import CSVExtractionError
from ingestion.base import CancellationToken, RowSource
from ingestion.transformers.column_planner import normalize_header
from models.base import SourceType

logger = logging.getLogger(__name__)


def detect_delimiter(first_line: str) -> str:
    """More ``;`` than ``,`` in the header line means a semicolon file."""
    return ";" if first_line.count(";") > first_line.count(",") else ","


def normalize_csv_header(value: Any) -> str:
    return normalize_header(str(value).replace('"', ""))


class CSVRowSource(RowSource):
    """
    Stream records from a delimited file.

    Supports:
    - Separator auto-detection from the header line
    - UTF-8 BOM, blank lines and short rows
    - Transparent gzip decompression
    - Resume by skipping already-processed records
    """

    source_type = SourceType.CSV

    def __init__(
        self,
        file_path: str,
        delimiter: Optional[str] = None,
        compression: str = "none",
        resume_state: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
        chunk_rows: int = None,
    ):
        super().__init__(resume_state, cancel_token)
        self.file_path = Path(file_path)
        self.delimiter = delimiter
        self.compression = compression
        self.chunk_rows = chunk_rows or settings.ETL_CSV_CHUNK_ROWS

    def _open_text(self):
        if self.compression == "gzip":
            return gzip.open(self.file_path, "rt", encoding="utf-8-sig", newline="")
        return open(self.file_path, "r", encoding="utf-8-sig", newline="")

    def _read_first_line(self) -> str:
        with self._open_text() as f:
            for line in f:
                if line.strip():
                    return line
        return ""

    def _open_reader(self, delimiter: str):
        # Rows with more fields than the header are truncated instead of failing
        return pd.read_csv(
            self.file_path,
            sep=delimiter,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            encoding="utf-8-sig",
            compression="gzip" if self.compression == "gzip" else None,
            chunksize=self.chunk_rows,
            engine="python",
            index_col=False,
            on_bad_lines=lambda fields: fields,
        )

    async def rows(self) -> AsyncIterator[Dict[str, Any]]:
        if not self.file_path.exists():
            raise CSVExtractionError(
                f"CSV file not found: {self.file_path}",
                context={"file_path": str(self.file_path)}
            )

        try:
            first_line = await asyncio.to_thread(self._read_first_line)
        except (OSError, UnicodeDecodeError) as e:
            raise CSVExtractionError(
                "Failed to read CSV header",
                context={"file_path": str(self.file_path)},
                original_exception=e
            )
        if not first_line:
            logger.warning(f"CSV file is empty: {self.file_path}")
            return

        delimiter = self.delimiter or detect_delimiter(first_line)
        to_skip = self._position
        logger.info(
            f"Reading CSV from {self.file_path} (delimiter={delimiter!r}, skip_rows={to_skip})"
        )

        try:
            reader = await asyncio.to_thread(self._open_reader, delimiter)
        except pd.errors.EmptyDataError:
            return
        except (pd.errors.ParserError, ValueError) as e:
            raise CSVExtractionError(
                "Failed to open CSV",
                context={"file_path": str(self.file_path)},
                original_exception=e
            )
        headers: Optional[List[str]] = None
        line_offset = 1
        try:
            while True:
                self.check_cancelled()
                try:
                    chunk = await asyncio.to_thread(next, reader, None)
                except pd.errors.EmptyDataError:
                    return
                except (pd.errors.ParserError, UnicodeDecodeError, OSError) as e:
                    raise CSVExtractionError(
                        "Failed to parse CSV",
                        context={"file_path": str(self.file_path), "line_number": line_offset},
                        original_exception=e
                    )
                if chunk is None:
                    return

                if headers is None:
                    headers = [normalize_csv_header(c) for c in chunk.columns]
                line_offset += len(chunk)

                if to_skip >= len(chunk):
                    to_skip -= len(chunk)
                    continue
                if to_skip:
                    chunk = chunk.iloc[to_skip:]
                    to_skip = 0

                for values in chunk.itertuples(index=False, name=None):
                    self._advance()
                    yield {
                        header: value.strip() if isinstance(value, str) else value
                        for header, value in zip(headers, values)
                    }
        finally:
            reader.close()
