"""
Market data reader: historical OHLCV files from object storage to candles.

The storage location comes from dataset metadata that users control, so the
reader treats it as untrusted input:

    1. Normalize ``scheme://bucket/path``, ``http(s)://host/bucket/path`` and
       bare paths to a bucket-relative object path.
    2. Sanitize the path. Empty paths, null bytes, ``..`` and absolute paths
       each fail with their own error before storage is touched.
    3. Stat the object and reject files above the size cap unread.
    4. Stream the file through the csv module one physical line at a time,
       resolving header aliases once, filtering the requested date range row
       by row and dropping rows that are malformed or whose timestamp or
       close price cannot be parsed.

Output candles are stably sorted by timestamp, so rows sharing a timestamp
keep their file order. They are never merged.

Example:
    >>> reader = MarketDataReader(LocalObjectStorage("data/market"))
    >>> result = reader.read_market_data(dataset, start_date=datetime(2024, 1, 1, tzinfo=UTC))
    >>> result.record_count
    8760
"""

from __future__ import annotations

import csv
import io
import logging
import math
import posixpath
import re
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from enum import Enum
from operator import attrgetter
from urllib.parse import urlsplit

from libs.backtest.exceptions import (
    AbsoluteStoragePathError,
    EmptyStoragePathError,
    InvalidStorageLocationError,
    InvalidStoragePathError,
    MalformedHeaderError,
    MarketDataFileNotFoundError,
    MarketDataFileTooLargeError,
    MissingRequiredColumnError,
    NoStorageLocationError,
    NoValidDataRowsError,
    NullByteInPathError,
    PathTraversalError,
)
from libs.backtest.models import Candle, DateRange, MarketDataSet, ParsedMarketData
from libs.backtest.storage import ObjectStorage

logger = logging.getLogger(__name__)

MAX_FILE_SIZE_BYTES = 500 * 1024 * 1024

# Unix timestamp bounds used to tell seconds from milliseconds
MIN_UNIX_SECONDS = 946_684_800  # 2000-01-01T00:00:00Z
MAX_UNIX_SECONDS = 4_102_444_800  # 2100-01-01T00:00:00Z
MIN_UNIX_MILLISECONDS = MIN_UNIX_SECONDS * 1000

UNKNOWN_COIN_ID = "UNKNOWN"

# Skipped-row share above which a load is logged as degraded
ROW_ERROR_WARN_RATIO = 0.1
MAX_RECORDED_ROW_ERRORS = 100

_NUMERIC_TIMESTAMP = re.compile(r"[+-]?\d+(\.\d+)?")
_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:[\\/]")


class MarketDataColumn(str, Enum):
    TIMESTAMP = "timestamp"
    OPEN = "open"
    HIGH = "high"
    LOW = "low"
    CLOSE = "close"
    VOLUME = "volume"
    SYMBOL = "symbol"


# Accepted header spellings, in priority order, matched case-insensitively
COLUMN_ALIASES: dict[MarketDataColumn, tuple[str, ...]] = {
    MarketDataColumn.TIMESTAMP: ("timestamp", "time", "date", "datetime"),
    MarketDataColumn.OPEN: ("open", "o"),
    MarketDataColumn.HIGH: ("high", "h"),
    MarketDataColumn.LOW: ("low", "l"),
    MarketDataColumn.CLOSE: ("close", "price", "c"),
    MarketDataColumn.VOLUME: ("volume", "vol", "v"),
    MarketDataColumn.SYMBOL: ("symbol", "ticker", "coin", "asset"),
}

REQUIRED_COLUMNS = (MarketDataColumn.TIMESTAMP, MarketDataColumn.CLOSE)


def has_storage_location(dataset: MarketDataSet) -> bool:
    return bool(dataset.storage_location and dataset.storage_location.strip())


def sanitize_object_path(path: str) -> str:
    """
    Validate a bucket-relative object path.

    Raises:
        EmptyStoragePathError: Path is empty or normalizes to nothing
        NullByteInPathError: Path contains ``\\0``
        PathTraversalError: Path contains ``..`` anywhere
        AbsoluteStoragePathError: Path starts with a separator or drive letter
    """
    try:
        if not path or not path.strip():
            raise EmptyStoragePathError(path)
        if "\x00" in path:
            raise NullByteInPathError(path)
        if ".." in path:
            raise PathTraversalError(path)
        if path.startswith(("/", "\\")) or _WINDOWS_DRIVE.match(path):
            raise AbsoluteStoragePathError(path)

        normalized = posixpath.normpath(path.strip())
        if normalized in ("", "."):
            raise EmptyStoragePathError(path)
    except InvalidStoragePathError as e:
        logger.warning(
            "Rejected market data storage path",
            extra={"path": repr(path), "reason": e.reason},
        )
        raise
    return normalized


def parse_storage_location(location: str) -> str:
    """
    Convert a storage location into a sanitized bucket-relative path.

    Supported forms:
        - ``datasets/btc-hourly.csv``
        - ``s3://bucket/datasets/btc-hourly.csv`` (any ``scheme://bucket/...``)
        - ``http://minio:9000/bucket/datasets/btc-hourly.csv``
    """
    location = location.strip()

    if "://" in location:
        scheme, _, remainder = location.partition("://")
        if scheme.lower() in ("http", "https"):
            parts = [part for part in urlsplit(location).path.split("/") if part]
            if len(parts) < 2:
                raise InvalidStorageLocationError(location, "expected /bucket/path in URL")
            object_path = "/".join(parts[1:])
        else:
            bucket, slash, object_path = remainder.partition("/")
            if not bucket or not slash:
                raise InvalidStorageLocationError(location, f"expected {scheme}://bucket/path")
    else:
        object_path = location

    return sanitize_object_path(object_path)


def resolve_columns(header: list[str]) -> dict[MarketDataColumn, int]:
    """
    Map canonical columns to header positions.

    Raises:
        MissingRequiredColumnError: Timestamp or close column absent
    """
    positions: dict[str, int] = {}
    for index, name in enumerate(header):
        positions.setdefault(name.strip().lstrip("\ufeff").lower(), index)

    resolved: dict[MarketDataColumn, int] = {}
    for column, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in positions:
                resolved[column] = positions[alias]
                break

    for column in REQUIRED_COLUMNS:
        if column not in resolved:
            raise MissingRequiredColumnError(column.value, header)
    return resolved


def parse_timestamp(value: str | None) -> datetime | None:
    """
    Parse ISO-8601, Unix seconds or Unix milliseconds into an aware UTC datetime.

    Numeric values between 2000-01-01 and 2100-01-01 in seconds are treated as
    seconds; larger values past the 2000-01-01 millisecond mark as milliseconds.
    Naive ISO values are taken as UTC. Returns None for anything else.
    """
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None

    if _NUMERIC_TIMESTAMP.fullmatch(text):
        number = float(text)
        try:
            if MIN_UNIX_SECONDS < number < MAX_UNIX_SECONDS:
                return datetime.fromtimestamp(number, tz=UTC)
            if number > MIN_UNIX_MILLISECONDS:
                return datetime.fromtimestamp(number / 1000, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
        return None

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _parse_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        number = float(value.strip())
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def split_csv_line(line: str) -> list[str]:
    """
    Split one physical line into fields.

    Quote state never carries over to the next line, so an unterminated
    quote costs only its own row.

    Raises:
        csv.Error: Unterminated or misplaced quote, or an oversized field

    Example:
        >>> split_csv_line('1704067200, "42,000.5"\\r\\n')
        ['1704067200', '42,000.5']
    """
    line = line.rstrip("\r\n")
    if not line:
        return []
    return next(csv.reader([line], skipinitialspace=True, strict=True))


def _cell(
    row: list[str], columns: dict[MarketDataColumn, int], column: MarketDataColumn
) -> str | None:
    index = columns.get(column)
    if index is None or index >= len(row):
        return None
    return row[index]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class _ChunkStream(io.RawIOBase):
    """Raw binary stream over an iterable of byte chunks."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks: Iterator[bytes] = iter(chunks)
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: bytearray | memoryview) -> int:  # type: ignore[override]
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size

    def close(self) -> None:
        close_chunks = getattr(self._chunks, "close", None)
        if close_chunks is not None:
            close_chunks()
        super().close()


class MarketDataReader:
    """Reads dataset files from object storage into ordered candles."""

    def __init__(self, storage: ObjectStorage, max_file_bytes: int = MAX_FILE_SIZE_BYTES):
        self.storage = storage
        self.max_file_bytes = max_file_bytes

    def read_market_data(
        self,
        dataset: MarketDataSet,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> ParsedMarketData:
        """
        Load, validate and order the candles of ``dataset``.

        Args:
            dataset: Dataset with a storage location
            start_date: Inclusive lower bound (naive values are UTC)
            end_date: Inclusive upper bound (naive values are UTC)

        Raises:
            NoStorageLocationError: Dataset has no storage location
            InvalidStorageLocationError / InvalidStoragePathError: Location rejected
            MarketDataFileNotFoundError: Object missing
            MarketDataFileTooLargeError: Object above the size cap
            MissingRequiredColumnError: No timestamp or close column
            NoValidDataRowsError: Every data row failed to parse
        """
        if not has_storage_location(dataset):
            raise NoStorageLocationError(dataset.id)
        assert dataset.storage_location is not None

        object_path = parse_storage_location(dataset.storage_location)
        logger.info(
            "Reading market data from storage",
            extra={"dataset_id": dataset.id, "path": object_path},
        )

        stats = self.storage.get_file_stats(object_path)
        if stats is None:
            raise MarketDataFileNotFoundError(object_path)
        if stats.size > self.max_file_bytes:
            raise MarketDataFileTooLargeError(object_path, stats.size, self.max_file_bytes)

        start = _as_utc(start_date)
        end = _as_utc(end_date)
        default_coin_id = (
            dataset.instrument_universe[0].upper()
            if dataset.instrument_universe
            else UNKNOWN_COIN_ID
        )

        candles = self._parse_stream(
            object_path,
            self.storage.get_file_stream(object_path),
            default_coin_id,
            start,
            end,
        )
        candles.sort(key=attrgetter("timestamp"))

        if candles:
            date_range = DateRange(start=candles[0].timestamp, end=candles[-1].timestamp)
        else:
            now = datetime.now(UTC)
            date_range = DateRange(start=start or now, end=end or now)

        logger.info(
            "Loaded %d OHLCV records from %s (%s to %s)",
            len(candles),
            object_path,
            date_range.start.isoformat(),
            date_range.end.isoformat(),
            extra={"dataset_id": dataset.id, "record_count": len(candles)},
        )
        return ParsedMarketData(
            data=candles,
            record_count=len(candles),
            date_range=date_range,
            source="storage",
        )

    def _parse_stream(
        self,
        object_path: str,
        chunks: Iterable[bytes],
        default_coin_id: str,
        start: datetime | None,
        end: datetime | None,
    ) -> list[Candle]:
        candles: list[Candle] = []
        row_errors: list[str] = []
        error_count = 0
        valid_count = 0
        total_rows = 0

        text = io.TextIOWrapper(
            io.BufferedReader(_ChunkStream(chunks)),
            encoding="utf-8-sig",
            errors="replace",
            newline="",
        )
        with text:
            columns: dict[MarketDataColumn, int] | None = None

            for line_num, line in enumerate(text, start=1):
                try:
                    row = split_csv_line(line)
                except csv.Error as exc:
                    if columns is None:
                        raise MalformedHeaderError(object_path, str(exc)) from exc
                    total_rows += 1
                    error_count += 1
                    if len(row_errors) < MAX_RECORDED_ROW_ERRORS:
                        row_errors.append(f"Line {line_num}: malformed row ({exc})")
                    continue

                if not row or not any(cell.strip() for cell in row):
                    continue
                if columns is None:
                    columns = resolve_columns(row)
                    continue

                total_rows += 1

                timestamp = parse_timestamp(_cell(row, columns, MarketDataColumn.TIMESTAMP))
                if timestamp is None:
                    error_count += 1
                    if len(row_errors) < MAX_RECORDED_ROW_ERRORS:
                        row_errors.append(f"Line {line_num}: invalid timestamp")
                    continue

                close = _parse_float(_cell(row, columns, MarketDataColumn.CLOSE))
                if close is None:
                    error_count += 1
                    if len(row_errors) < MAX_RECORDED_ROW_ERRORS:
                        row_errors.append(f"Line {line_num}: invalid close price")
                    continue

                valid_count += 1
                if (start is not None and timestamp < start) or (
                    end is not None and timestamp > end
                ):
                    continue

                open_ = _parse_float(_cell(row, columns, MarketDataColumn.OPEN))
                high = _parse_float(_cell(row, columns, MarketDataColumn.HIGH))
                low = _parse_float(_cell(row, columns, MarketDataColumn.LOW))
                volume = _parse_float(_cell(row, columns, MarketDataColumn.VOLUME))
                symbol = (_cell(row, columns, MarketDataColumn.SYMBOL) or "").strip()

                candles.append(
                    Candle(
                        timestamp=timestamp,
                        open=close if open_ is None else open_,
                        high=close if high is None else high,
                        low=close if low is None else low,
                        close=close,
                        volume=0.0 if volume is None else volume,
                        coin_id=symbol.upper() if symbol else default_coin_id,
                    )
                )

        if columns is None:
            raise NoValidDataRowsError(object_path, ["file has no header row"])

        if error_count and error_count > total_rows * ROW_ERROR_WARN_RATIO:
            logger.warning(
                "Market data parsing skipped %d of %d rows",
                error_count,
                total_rows,
                extra={"path": object_path, "first_errors": row_errors[:5]},
            )

        if valid_count == 0:
            raise NoValidDataRowsError(object_path, row_errors or ["file has no data rows"])

        return candles
