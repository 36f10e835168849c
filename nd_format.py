from __future__ import annotations

import re
import struct
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Tuple

import numpy as np

MINUTES_PER_DAY = 24 * 60
SECONDS_PER_DAY = 86400
SENTINEL = 32767
SCALE_FACTOR = 100.0
QUANTIZED_MIN = -32768
QUANTIZED_MAX = SENTINEL - 1
HEADER_PREFIX = struct.Struct("<q")
DAY_FILE_SUFFIX = ".nd"
SLOT_DTYPE = np.dtype("<i2")

# type, la1, la2, lo1, lo2, nx, ny, dx, dy, start_ts, interval_minutes, slots_filled
_FIXED_HEADER = struct.Struct("<i4d2i2dqii")
_ARRAY_COUNT = struct.Struct("<i")
_FLOAT64 = np.dtype("<f8")
_DAY_FILE_NAME = re.compile(r"^(\d+)_(-?\d+)" + re.escape(DAY_FILE_SUFFIX) + "$")


class DayFileError(RuntimeError):
    """Base class for day file store failures."""


class MalformedHeaderError(DayFileError):
    """Raised when header bytes cannot be decoded into a FileHeader."""


class CorruptDayFileError(MalformedHeaderError):
    """Raised when an existing day file is present but unreadable."""


class MisalignedTimestampError(DayFileError, ValueError):
    """Raised when a valid time does not fall on a slot boundary."""


class HeaderLengthChangedError(DayFileError):
    """Raised when rewriting a header would shift the data section."""


class GeometryMismatchError(DayFileError):
    """Raised when a dataset does not fit the grid of an existing day file."""


class InvalidIntervalError(DayFileError, ValueError):
    """Raised when a slot interval does not divide the day evenly."""


class QuantizationRangeError(DayFileError, ValueError):
    """Raised when a value does not fit into a non-sentinel int16 slot."""


class DayFileIOError(DayFileError):
    """Raised when reading from or writing to a day file fails."""


class DayFileUnreadableError(DayFileIOError):
    """Raised when a day file cannot be opened or its header read."""


class IndexOutOfRangeError(DayFileError, IndexError):
    """Raised when grid indices fall outside the stored grid."""


@dataclass(frozen=True)
class FileHeader:
    type_code: int
    la1: float
    la2: float
    lo1: float
    lo2: float
    nx: int
    ny: int
    dx: float
    dy: float
    start_ts: int
    interval_minutes: int
    slots_filled: int
    latitudes: Tuple[float, ...] = ()
    longitudes: Tuple[float, ...] = ()

    @property
    def cell_count(self) -> int:
        return self.nx * self.ny

    @property
    def slots_per_day(self) -> int:
        return slots_per_day(self.interval_minutes)


def slots_per_day(interval_minutes: int) -> int:
    """Number of slots in one UTC day for the given interval.

    Intervals that do not divide 1440 would leave a partial last slot and are
    rejected.
    """
    interval = int(interval_minutes)
    if interval <= 0 or interval != interval_minutes or MINUTES_PER_DAY % interval != 0:
        raise InvalidIntervalError(
            f"Interval of {interval_minutes} minutes does not divide a day of {MINUTES_PER_DAY} minutes"
        )
    return MINUTES_PER_DAY // interval


def day_file_name(type_code: int, day_index: int) -> str:
    return f"{int(type_code)}_{int(day_index)}{DAY_FILE_SUFFIX}"


def parse_day_file_name(filename: str) -> Tuple[int, int] | None:
    m = _DAY_FILE_NAME.match(filename)
    if not m:
        return None
    return int(m.group(1)), int(m.group(2))


def serialize_header(header: FileHeader) -> bytes:
    if len(header.latitudes) != header.ny or len(header.longitudes) != header.nx:
        raise MalformedHeaderError(
            f"Axis lengths lat={len(header.latitudes)} lon={len(header.longitudes)} "
            f"do not match ny={header.ny} nx={header.nx}"
        )
    try:
        fixed = _FIXED_HEADER.pack(
            header.type_code,
            header.la1,
            header.la2,
            header.lo1,
            header.lo2,
            header.nx,
            header.ny,
            header.dx,
            header.dy,
            header.start_ts,
            header.interval_minutes,
            header.slots_filled,
        )
    except struct.error as exc:
        raise MalformedHeaderError(f"Header field out of range: {exc}") from exc
    return fixed + _pack_axis(header.latitudes) + _pack_axis(header.longitudes)


def deserialize_header(data: bytes) -> FileHeader:
    data = bytes(data)
    if len(data) < _FIXED_HEADER.size:
        raise MalformedHeaderError(
            f"Header needs at least {_FIXED_HEADER.size} bytes, got {len(data)}"
        )
    (
        type_code,
        la1,
        la2,
        lo1,
        lo2,
        nx,
        ny,
        dx,
        dy,
        start_ts,
        interval_minutes,
        slots_filled,
    ) = _FIXED_HEADER.unpack_from(data, 0)
    latitudes, offset = _unpack_axis(data, _FIXED_HEADER.size, "latitude")
    longitudes, offset = _unpack_axis(data, offset, "longitude")
    if offset != len(data):
        raise MalformedHeaderError(f"Unexpected {len(data) - offset} trailing header bytes")
    if len(latitudes) != ny or len(longitudes) != nx:
        raise MalformedHeaderError(
            f"Axis lengths lat={len(latitudes)} lon={len(longitudes)} do not match ny={ny} nx={nx}"
        )
    return FileHeader(
        type_code=type_code,
        la1=la1,
        la2=la2,
        lo1=lo1,
        lo2=lo2,
        nx=nx,
        ny=ny,
        dx=dx,
        dy=dy,
        start_ts=start_ts,
        interval_minutes=interval_minutes,
        slots_filled=slots_filled,
        latitudes=latitudes,
        longitudes=longitudes,
    )


def _pack_axis(values: Iterable[float]) -> bytes:
    arr = np.asarray(tuple(values), dtype=_FLOAT64)
    return _ARRAY_COUNT.pack(arr.size) + arr.tobytes()


def _unpack_axis(data: bytes, offset: int, name: str) -> Tuple[Tuple[float, ...], int]:
    if len(data) < offset + _ARRAY_COUNT.size:
        raise MalformedHeaderError(f"Header truncated before {name} count")
    (count,) = _ARRAY_COUNT.unpack_from(data, offset)
    offset += _ARRAY_COUNT.size
    if count < 0:
        raise MalformedHeaderError(f"Negative {name} count {count}")
    end = offset + count * _FLOAT64.itemsize
    if len(data) < end:
        raise MalformedHeaderError(f"Header truncated inside {name} array of {count} values")
    arr = np.frombuffer(data, dtype=_FLOAT64, count=count, offset=offset)
    return tuple(float(v) for v in arr), end


def read_header_block(fh: BinaryIO) -> Tuple[FileHeader, int]:
    """Read the length prefix and header from the start of an open day file.

    Returns the header and the byte offset at which the data section starts.
    """
    file_size = fh.seek(0, 2)
    fh.seek(0)
    prefix = fh.read(HEADER_PREFIX.size)
    if len(prefix) != HEADER_PREFIX.size:
        raise MalformedHeaderError("Day file is shorter than its header length prefix")
    (header_length,) = HEADER_PREFIX.unpack(prefix)
    if header_length <= 0 or header_length > file_size - HEADER_PREFIX.size:
        raise MalformedHeaderError(
            f"Header length prefix says {header_length} bytes, file holds {file_size - HEADER_PREFIX.size}"
        )
    header_bytes = fh.read(header_length)
    if len(header_bytes) != header_length:
        raise MalformedHeaderError(
            f"Header length prefix says {header_length} bytes, file holds {len(header_bytes)}"
        )
    return deserialize_header(header_bytes), HEADER_PREFIX.size + header_length


def quantize(values) -> np.ndarray:
    """Scale physical values into int16 slot values.

    NaN maps to the sentinel. Anything that would land outside the int16 range
    or on the sentinel itself raises QuantizationRangeError.
    """
    arr = np.asarray(values, dtype=np.float64).ravel()
    # Halves round away from zero (0.125 -> 13), not to even.
    raw = arr * SCALE_FACTOR
    scaled = np.sign(raw) * np.floor(np.abs(raw) + 0.5)
    missing = np.isnan(scaled)
    bad = ~missing & ((scaled < QUANTIZED_MIN) | (scaled > QUANTIZED_MAX))
    if np.any(bad):
        first = int(np.flatnonzero(bad)[0])
        raise QuantizationRangeError(
            f"{int(bad.sum())} value(s) outside the storable range "
            f"[{QUANTIZED_MIN / SCALE_FACTOR}, {QUANTIZED_MAX / SCALE_FACTOR}], "
            f"first at cell {first}: {arr[first]}"
        )
    out = np.full(arr.shape, SENTINEL, dtype=SLOT_DTYPE)
    out[~missing] = scaled[~missing].astype(SLOT_DTYPE)
    return out


def dequantize(slots) -> list:
    return [None if int(v) == SENTINEL else round(int(v) / SCALE_FACTOR, 2) for v in slots]


class CellBlockStore:
    """Fixed-stride view of the data section of a day file.

    Cell ``i`` owns the byte range ``[data_offset + i * stride, data_offset + (i + 1) * stride)``
    where ``stride = 2 * slots_per_day``. Slot writes touch exactly two bytes.
    """

    def __init__(self, fh: BinaryIO, data_offset: int, cell_count: int, slots: int) -> None:
        self._fh = fh
        self.data_offset = int(data_offset)
        self.cell_count = int(cell_count)
        self.slots = int(slots)
        self.stride = self.slots * SLOT_DTYPE.itemsize

    def block_offset(self, cell_index: int) -> int:
        if not 0 <= cell_index < self.cell_count:
            raise IndexOutOfRangeError(f"Cell {cell_index} outside grid of {self.cell_count} cells")
        return self.data_offset + cell_index * self.stride

    def slot_offset(self, cell_index: int, slot_index: int) -> int:
        if not 0 <= slot_index < self.slots:
            raise IndexOutOfRangeError(f"Slot {slot_index} outside day of {self.slots} slots")
        return self.block_offset(cell_index) + slot_index * SLOT_DTYPE.itemsize

    def read_block(self, cell_index: int) -> np.ndarray:
        offset = self.block_offset(cell_index)
        try:
            self._fh.seek(offset)
            raw = self._fh.read(self.stride)
        except OSError as exc:
            raise DayFileIOError(f"Failed reading cell {cell_index} at offset {offset}: {exc}") from exc
        if len(raw) != self.stride:
            raise DayFileIOError(
                f"Short read for cell {cell_index} at offset {offset}: "
                f"expected {self.stride} bytes, got {len(raw)}"
            )
        return np.frombuffer(raw, dtype=SLOT_DTYPE).astype(np.int16)

    def write_slot_column(self, slot_index: int, quantized: np.ndarray) -> None:
        """Write one slot of every cell, leaving all other slots untouched."""
        quantized = np.asarray(quantized, dtype=SLOT_DTYPE)
        if quantized.size != self.cell_count:
            raise GeometryMismatchError(
                f"Got {quantized.size} values for a grid of {self.cell_count} cells"
            )
        raw = quantized.tobytes()
        width = SLOT_DTYPE.itemsize
        try:
            for cell_index in range(self.cell_count):
                self._fh.seek(self.slot_offset(cell_index, slot_index))
                self._fh.write(raw[cell_index * width : (cell_index + 1) * width])
        except OSError as exc:
            raise DayFileIOError(f"Failed writing slot {slot_index}: {exc}") from exc


def build_data_section(cell_count: int, slots: int, slot_index: int, quantized: np.ndarray) -> bytes:
    block = np.full((int(cell_count), int(slots)), SENTINEL, dtype=SLOT_DTYPE)
    block[:, slot_index] = np.asarray(quantized, dtype=SLOT_DTYPE)
    return block.tobytes()
