from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import BinaryIO, Dict, List, Tuple

import numpy as np

from nd_format import (
    CellBlockStore,
    DayFileUnreadableError,
    FileHeader,
    IndexOutOfRangeError,
    InvalidIntervalError,
    MalformedHeaderError,
    dequantize,
    read_header_block,
)

LOGGER = logging.getLogger("nd_store.day_file_reader")


class DayFileReader:
    """Read handle on one day file.

    The header is decoded once in :meth:`open`; slot queries seek straight into
    the data section through a :class:`CellBlockStore`. The file handle stays
    open until :meth:`close`, so one reader can serve many queries.
    """

    def __init__(self, path: Path, fh: BinaryIO, header: FileHeader, data_offset: int) -> None:
        self.path = path
        self.header = header
        self.data_offset = data_offset
        self._fh = fh
        self._blocks = CellBlockStore(fh, data_offset, header.cell_count, header.slots_per_day)

    @classmethod
    def open(cls, path: Path | str) -> "DayFileReader":
        path = Path(path)
        try:
            # Unbuffered, so slots appended in place by a writer show up on the next read.
            fh = path.open("rb", buffering=0)
        except OSError as exc:
            raise DayFileUnreadableError(f"Cannot open day file {path}: {exc}") from exc
        try:
            header, data_offset = read_header_block(fh)
            reader = cls(path, fh, header, data_offset)
        except OSError as exc:
            fh.close()
            raise DayFileUnreadableError(f"Cannot read header of day file {path}: {exc}") from exc
        except InvalidIntervalError as exc:
            fh.close()
            raise MalformedHeaderError(f"Day file {path} has an invalid slot interval: {exc}") from exc
        except Exception:
            fh.close()
            raise
        LOGGER.debug(
            "Opened day file path=%s type=%s grid=%sx%s slots_filled=%s",
            path,
            header.type_code,
            header.ny,
            header.nx,
            header.slots_filled,
        )
        return reader

    def close(self) -> None:
        self._fh.close()

    @property
    def closed(self) -> bool:
        return self._fh.closed

    def is_stale(self) -> bool:
        """True when the path now points at a different file than the open handle."""
        try:
            current = os.stat(self.path)
        except OSError:
            return True
        opened = os.fstat(self._fh.fileno())
        return (current.st_dev, current.st_ino) != (opened.st_dev, opened.st_ino)

    def __enter__(self) -> "DayFileReader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def slots_per_day(self) -> int:
        return self.header.slots_per_day

    def get_slots(self, lat_index: int, lng_index: int) -> np.ndarray:
        if not 0 <= lat_index < self.header.ny or not 0 <= lng_index < self.header.nx:
            raise IndexOutOfRangeError(
                f"Cell ({lat_index}, {lng_index}) outside grid of {self.header.ny}x{self.header.nx}"
            )
        return self._blocks.read_block(lat_index * self.header.nx + lng_index)

    def locate_cell(self, lat: float, lng: float) -> Tuple[int, int] | None:
        """Find the grid cell whose axis values lie within ``dx / 2`` of the point.

        Rows are scanned in stored order and the first matching (lat, lng)
        pair wins. Returns None when no cell is close enough.
        """
        tolerance = self.header.dx / 2
        lng_index = _first_within(self.header.longitudes, lng, tolerance)
        if lng_index is None:
            return None
        lat_index = _first_within(self.header.latitudes, lat, tolerance)
        if lat_index is None:
            return None
        return lat_index, lng_index

    def slot_times(self) -> List[datetime]:
        start = datetime.fromtimestamp(self.header.start_ts, tz=timezone.utc)
        step = timedelta(minutes=self.header.interval_minutes)
        return [start + step * i for i in range(self.slots_per_day)]

    def get_series(self, lat: float, lng: float) -> Dict[str, object] | None:
        cell = self.locate_cell(lat, lng)
        if cell is None:
            return None
        lat_index, lng_index = cell
        slots = self.get_slots(lat_index, lng_index)
        return {
            "lat_index": lat_index,
            "lng_index": lng_index,
            "cell_lat": self.header.latitudes[lat_index],
            "cell_lon": self.header.longitudes[lng_index],
            "valid_times_utc": [t.strftime("%Y-%m-%dT%H:%M:%SZ") for t in self.slot_times()],
            "values": dequantize(slots),
        }


def _first_within(axis, value: float, tolerance: float) -> int | None:
    axis = np.asarray(axis, dtype=np.float64)
    hits = np.flatnonzero((axis >= value - tolerance) & (axis <= value + tolerance))
    if hits.size == 0:
        return None
    return int(hits[0])
