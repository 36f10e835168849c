from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator

import numpy as np
import requests

GRIB_FETCH_RETRIES = 3
GRIB_FETCH_BASE_BACKOFF_SECONDS = 0.4
GRIB_FETCH_TIMEOUT_SECONDS = float(os.getenv("GRIB_FETCH_TIMEOUT_SECONDS", "30"))
LOGGER = logging.getLogger("nd_store.grib_source")

# GRIB2 code table 4.4, indicator of unit of time range.
FORECAST_UNIT_DURATIONS = {
    0: timedelta(minutes=1),
    1: timedelta(hours=1),
    2: timedelta(days=1),
    3: timedelta(days=30),
    4: timedelta(days=365),
    5: timedelta(days=365 * 10),
    6: timedelta(days=365 * 30),
    7: timedelta(days=365 * 100),
    10: timedelta(hours=3),
    11: timedelta(hours=6),
    12: timedelta(hours=12),
    13: timedelta(seconds=1),
}
FORECAST_UNIT_MISSING = 255


class GridSourceError(RuntimeError):
    """Base class for GRIB acquisition failures."""


class GridFetchError(GridSourceError):
    """Raised when a GRIB payload cannot be downloaded."""


class GridDecodeError(GridSourceError, ValueError):
    """Raised when a GRIB message cannot be turned into a GridDataset."""


@dataclass(frozen=True, eq=False)
class GridDataset:
    """One decoded field at one valid time, values in row-major (lat, lon) order."""

    type_code: int
    nx: int
    ny: int
    la1: float
    la2: float
    lo1: float
    lo2: float
    dx: float
    dy: float
    values: np.ndarray
    latitudes: np.ndarray
    longitudes: np.ndarray
    valid_time: datetime
    metadata: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        values = np.asarray(self.values, dtype=np.float64).ravel()
        latitudes = np.asarray(self.latitudes, dtype=np.float64).ravel()
        longitudes = np.asarray(self.longitudes, dtype=np.float64).ravel()
        if self.nx <= 0 or self.ny <= 0:
            raise ValueError(f"Grid dimensions must be positive, got nx={self.nx} ny={self.ny}")
        if values.size != self.nx * self.ny:
            raise ValueError(f"Expected {self.nx * self.ny} values for a {self.ny}x{self.nx} grid, got {values.size}")
        if latitudes.size != self.ny:
            raise ValueError(f"Expected {self.ny} distinct latitudes, got {latitudes.size}")
        if longitudes.size != self.nx:
            raise ValueError(f"Expected {self.nx} distinct longitudes, got {longitudes.size}")
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "latitudes", latitudes)
        object.__setattr__(self, "longitudes", longitudes)

    @property
    def valid_timestamp(self) -> float:
        """Valid time in epoch seconds; naive datetimes are taken as UTC."""
        valid_time = self.valid_time
        if valid_time.tzinfo is None:
            valid_time = valid_time.replace(tzinfo=timezone.utc)
        return valid_time.timestamp()


def grib_type_code(discipline: int, category: int, number: int) -> int:
    return (int(discipline) & 0xFF) | ((int(category) & 0xFF) << 8) | ((int(number) & 0xFF) << 16)


def forecast_offset(unit_code: int, forecast_time: int) -> timedelta:
    unit_code = int(unit_code)
    if unit_code == FORECAST_UNIT_MISSING:
        LOGGER.warning("Forecast time unit missing; using reference time as valid time")
        return timedelta(0)
    unit = FORECAST_UNIT_DURATIONS.get(unit_code)
    if unit is None:
        raise GridDecodeError(f"Unsupported forecast time unit: {unit_code}")
    return unit * int(forecast_time)


def orient_latitudes(latitudes: np.ndarray, la1: float, la2: float) -> np.ndarray:
    """Order distinct latitudes the way rows are stored (from la1 towards la2)."""
    latitudes = np.asarray(latitudes, dtype=np.float64)
    if latitudes.size > 1 and la2 < la1 and latitudes[-1] > latitudes[0]:
        return latitudes[::-1].copy()
    return latitudes


def decode_grib_message(payload: bytes) -> GridDataset:
    try:
        import eccodes
    except ImportError as exc:
        raise RuntimeError(
            "eccodes is required for GRIB decoding. Install the project dependencies (pip install -e .)"
        ) from exc

    try:
        gid = eccodes.codes_new_from_message(bytes(payload))
    except Exception as exc:
        raise GridDecodeError(f"Failed to create handle from GRIB message: {exc}") from exc
    if gid is None:
        raise GridDecodeError("Failed to create handle from GRIB message")

    try:
        nx = int(eccodes.codes_get(gid, "Ni"))
        ny = int(eccodes.codes_get(gid, "Nj"))
        la1 = float(eccodes.codes_get(gid, "latitudeOfFirstGridPointInDegrees"))
        la2 = float(eccodes.codes_get(gid, "latitudeOfLastGridPointInDegrees"))
        lo1 = float(eccodes.codes_get(gid, "longitudeOfFirstGridPointInDegrees"))
        lo2 = float(eccodes.codes_get(gid, "longitudeOfLastGridPointInDegrees"))
        dx = float(eccodes.codes_get(gid, "iDirectionIncrementInDegrees"))
        dy = float(eccodes.codes_get(gid, "jDirectionIncrementInDegrees"))

        reference_time = datetime(
            int(eccodes.codes_get(gid, "year")),
            int(eccodes.codes_get(gid, "month")),
            int(eccodes.codes_get(gid, "day")),
            int(eccodes.codes_get(gid, "hour")),
            int(eccodes.codes_get(gid, "minute")),
            int(eccodes.codes_get(gid, "second")),
            tzinfo=timezone.utc,
        )
        unit_code = int(eccodes.codes_get(gid, "indicatorOfUnitOfTimeRange"))
        forecast_time = int(eccodes.codes_get(gid, "forecastTime"))
        type_code = grib_type_code(
            eccodes.codes_get(gid, "discipline"),
            eccodes.codes_get(gid, "parameterCategory"),
            eccodes.codes_get(gid, "parameterNumber"),
        )

        latitudes = np.asarray(eccodes.codes_get_array(gid, "distinctLatitudes"), dtype=np.float64)
        longitudes = np.asarray(eccodes.codes_get_array(gid, "distinctLongitudes"), dtype=np.float64)
        values = np.asarray(eccodes.codes_get_values(gid), dtype=np.float64)
        if int(eccodes.codes_get(gid, "bitmapPresent")):
            missing_value = float(eccodes.codes_get(gid, "missingValue"))
            values = np.where(values == missing_value, np.nan, values)
        scan_mode = int(eccodes.codes_get(gid, "scanningMode"))
    except Exception as exc:
        raise GridDecodeError(f"Failed to read GRIB keys: {exc}") from exc
    finally:
        eccodes.codes_release(gid)

    valid_time = reference_time + forecast_offset(unit_code, forecast_time)
    LOGGER.debug(
        "Decoded GRIB type=%s grid=%sx%s ref=%s valid=%s",
        type_code,
        ny,
        nx,
        reference_time.isoformat(),
        valid_time.isoformat(),
    )
    try:
        return GridDataset(
            type_code=type_code,
            nx=nx,
            ny=ny,
            la1=la1,
            la2=la2,
            lo1=lo1,
            lo2=lo2,
            dx=dx,
            dy=dy,
            values=values,
            latitudes=orient_latitudes(latitudes, la1, la2),
            longitudes=longitudes,
            valid_time=valid_time,
            metadata={
                "reference_time": reference_time.isoformat(),
                "forecast_time": forecast_time,
                "forecast_unit": unit_code,
                "scan_mode": scan_mode,
            },
        )
    except ValueError as exc:
        raise GridDecodeError(f"Inconsistent GRIB grid: {exc}") from exc


def iter_grib_messages(path: Path | str) -> Iterator[bytes]:
    """Yield the raw bytes of every GRIB message in a file."""
    try:
        import eccodes
    except ImportError as exc:
        raise RuntimeError(
            "eccodes is required for GRIB decoding. Install the project dependencies (pip install -e .)"
        ) from exc

    with open(path, "rb") as fh:
        while True:
            gid = eccodes.codes_grib_new_from_file(fh)
            if gid is None:
                break
            try:
                yield eccodes.codes_get_message(gid)
            finally:
                eccodes.codes_release(gid)


def fetch_grib_payload(url: str, session: requests.Session | None = None) -> bytes:
    http = session or requests
    last_exc: Exception | None = None
    for attempt in range(1, GRIB_FETCH_RETRIES + 1):
        try:
            response = http.get(url, timeout=GRIB_FETCH_TIMEOUT_SECONDS)
            response.raise_for_status()
            LOGGER.debug("Fetched GRIB payload url=%s bytes=%d attempt=%d", url, len(response.content), attempt)
            return response.content
        except requests.RequestException as exc:
            last_exc = exc
            if attempt >= GRIB_FETCH_RETRIES:
                break
            time.sleep(GRIB_FETCH_BASE_BACKOFF_SECONDS * (2 ** (attempt - 1)))

    raise GridFetchError(f"GRIB fetch failed for url={url} after {GRIB_FETCH_RETRIES} attempts: {last_exc}") from last_exc
