from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

import numpy as np

from grib_source import GridDataset
from nd_format import (
    DAY_FILE_SUFFIX,
    HEADER_PREFIX,
    SECONDS_PER_DAY,
    SLOT_DTYPE,
    CellBlockStore,
    CorruptDayFileError,
    DayFileIOError,
    DayFileUnreadableError,
    FileHeader,
    GeometryMismatchError,
    HeaderLengthChangedError,
    InvalidIntervalError,
    MalformedHeaderError,
    MisalignedTimestampError,
    build_data_section,
    day_file_name,
    parse_day_file_name,
    quantize,
    read_header_block,
    serialize_header,
    slots_per_day,
)

ND_ROOT_PATH = os.getenv("ND_ROOT_PATH", "data/nd")
ND_INTERVAL_MINUTES = int(os.getenv("ND_INTERVAL_MINUTES", "10"))
ND_REPLACE_CORRUPT = os.getenv("ND_REPLACE_CORRUPT", "1").strip() == "1"
LOGGER = logging.getLogger("nd_store.day_file_store")


@dataclass(frozen=True)
class WriteResult:
    path: Path
    type_code: int
    day_index: int
    slot_index: int
    slots_filled: int
    created: bool

    def as_dict(self) -> dict:
        return {
            "path": str(self.path),
            "type_code": self.type_code,
            "day_index": self.day_index,
            "slot_index": self.slot_index,
            "slots_filled": self.slots_filled,
            "created": self.created,
        }


def slot_position(timestamp: float, interval_minutes: int) -> Tuple[int, int, int]:
    """Return ``(day_start, day_index, slot_index)`` for an epoch timestamp.

    The timestamp has to sit exactly on a slot boundary counted from UTC
    midnight; anything else raises MisalignedTimestampError.
    """
    if timestamp != int(timestamp):
        raise MisalignedTimestampError(f"Timestamp {timestamp} has a sub-second component")
    ts = int(timestamp)
    day_index = ts // SECONDS_PER_DAY
    day_start = day_index * SECONDS_PER_DAY
    step = int(interval_minutes) * 60
    offset = ts - day_start
    if offset % step != 0:
        raise MisalignedTimestampError(
            f"Timestamp {ts} is {offset % step}s past a {interval_minutes}-minute slot boundary"
        )
    return day_start, day_index, offset // step


def day_index_for(valid_time: datetime) -> int:
    if valid_time.tzinfo is None:
        valid_time = valid_time.replace(tzinfo=timezone.utc)
    return int(valid_time.timestamp()) // SECONDS_PER_DAY


class DayFileStore:
    """Writes decoded grids into one slot file per (type code, UTC day)."""

    def __init__(
        self,
        root_path: Path | str | None = None,
        interval_minutes: int | None = None,
        replace_corrupt: bool | None = None,
    ) -> None:
        interval = ND_INTERVAL_MINUTES if interval_minutes is None else interval_minutes
        self.slots_per_day = slots_per_day(interval)
        self.interval_minutes = int(interval)
        self.root_path = Path(ND_ROOT_PATH if root_path is None else root_path)
        self.replace_corrupt = ND_REPLACE_CORRUPT if replace_corrupt is None else bool(replace_corrupt)
        self.root_path.mkdir(parents=True, exist_ok=True)

    def day_file_path_for_day(self, type_code: int, day_index: int) -> Path:
        return self.root_path / day_file_name(type_code, day_index)

    def day_file_path(self, type_code: int, valid_time: datetime) -> Path:
        return self.day_file_path_for_day(type_code, day_index_for(valid_time))

    def list_day_files(self) -> List[Tuple[int, int, Path]]:
        entries = []
        for path in self.root_path.glob(f"*{DAY_FILE_SUFFIX}"):
            parsed = parse_day_file_name(path.name)
            if parsed is None:
                continue
            entries.append((parsed[0], parsed[1], path))
        return sorted(entries)

    def write(self, dataset: GridDataset, interval_minutes: int | None = None) -> WriteResult:
        interval = self.interval_minutes if interval_minutes is None else interval_minutes
        slots = slots_per_day(interval)
        interval = int(interval)
        day_start, day_index, slot_index = slot_position(dataset.valid_timestamp, interval)
        quantized = quantize(dataset.values)
        path = self.day_file_path_for_day(dataset.type_code, day_index)

        existing = self._read_existing_header(path)
        if existing is None:
            slots_filled = self._create(path, dataset, day_start, interval, slots, slot_index, quantized)
            created = True
        else:
            header, data_offset = existing
            slots_filled = self._append(path, header, data_offset, dataset, interval, slots, slot_index, quantized)
            created = False

        LOGGER.info(
            "%s day file path=%s type=%s slot=%d/%d slots_filled=%d",
            "Created" if created else "Appended",
            path,
            dataset.type_code,
            slot_index,
            slots,
            slots_filled,
        )
        return WriteResult(
            path=path,
            type_code=int(dataset.type_code),
            day_index=day_index,
            slot_index=slot_index,
            slots_filled=slots_filled,
            created=created,
        )

    def _read_existing_header(self, path: Path) -> Tuple[FileHeader, int] | None:
        if not path.exists():
            return None
        try:
            with path.open("rb") as fh:
                header, data_offset = read_header_block(fh)
                expected_size = data_offset + header.cell_count * header.slots_per_day * SLOT_DTYPE.itemsize
                fh.seek(0, os.SEEK_END)
                actual_size = fh.tell()
            if actual_size < expected_size:
                raise MalformedHeaderError(
                    f"Data section truncated: expected {expected_size} bytes, file holds {actual_size}"
                )
        except (MalformedHeaderError, InvalidIntervalError) as exc:
            if self.replace_corrupt:
                LOGGER.warning("Replacing unreadable day file path=%s reason=%s", path, exc)
                return None
            raise CorruptDayFileError(f"Day file {path} is present but unreadable: {exc}") from exc
        except OSError as exc:
            if self.replace_corrupt:
                LOGGER.warning("Replacing day file that cannot be opened path=%s reason=%s", path, exc)
                return None
            raise DayFileUnreadableError(f"Cannot open day file {path}: {exc}") from exc
        return header, data_offset

    def _create(
        self,
        path: Path,
        dataset: GridDataset,
        day_start: int,
        interval: int,
        slots: int,
        slot_index: int,
        quantized: np.ndarray,
    ) -> int:
        header = FileHeader(
            type_code=int(dataset.type_code),
            la1=float(dataset.la1),
            la2=float(dataset.la2),
            lo1=float(dataset.lo1),
            lo2=float(dataset.lo2),
            nx=int(dataset.nx),
            ny=int(dataset.ny),
            dx=float(dataset.dx),
            dy=float(dataset.dy),
            start_ts=int(day_start),
            interval_minutes=interval,
            slots_filled=slot_index + 1,
            latitudes=tuple(float(v) for v in dataset.latitudes),
            longitudes=tuple(float(v) for v in dataset.longitudes),
        )
        header_bytes = serialize_header(header)
        data_bytes = build_data_section(header.cell_count, slots, slot_index, quantized)

        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            with tmp_path.open("wb") as tmp_file:
                tmp_file.write(HEADER_PREFIX.pack(len(header_bytes)))
                tmp_file.write(header_bytes)
                tmp_file.write(data_bytes)
            os.replace(tmp_path, path)
        except OSError as exc:
            self._safe_unlink(tmp_path)
            raise DayFileIOError(f"Failed to create day file {path}: {exc}") from exc
        LOGGER.debug(
            "Wrote day file path=%s header_bytes=%d data_bytes=%d",
            path,
            len(header_bytes),
            len(data_bytes),
        )
        return header.slots_filled

    def _append(
        self,
        path: Path,
        header: FileHeader,
        data_offset: int,
        dataset: GridDataset,
        interval: int,
        slots: int,
        slot_index: int,
        quantized: np.ndarray,
    ) -> int:
        if header.nx != dataset.nx or header.ny != dataset.ny:
            raise GeometryMismatchError(
                f"Dataset grid {dataset.ny}x{dataset.nx} does not match day file {path} grid {header.ny}x{header.nx}"
            )
        if header.interval_minutes != interval:
            raise GeometryMismatchError(
                f"Day file {path} uses {header.interval_minutes}-minute slots, write requested {interval}"
            )

        updated = replace(header, slots_filled=header.slots_filled + 1)
        header_bytes = serialize_header(updated)
        stored_length = data_offset - HEADER_PREFIX.size
        if len(header_bytes) != stored_length:
            raise HeaderLengthChangedError(
                f"Header of {path} would change from {stored_length} to {len(header_bytes)} bytes"
            )

        try:
            with path.open("r+b") as fh:
                fh.seek(0)
                fh.write(HEADER_PREFIX.pack(len(header_bytes)))
                fh.write(header_bytes)
                CellBlockStore(fh, data_offset, header.cell_count, slots).write_slot_column(slot_index, quantized)
        except OSError as exc:
            raise DayFileIOError(f"Failed to append to day file {path}: {exc}") from exc
        return updated.slots_filled

    @staticmethod
    def _safe_unlink(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            pass
