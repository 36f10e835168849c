from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Dict, List, Tuple, TypeVar

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from day_file_reader import DayFileReader
from day_file_store import DayFileStore
from grib_source import GridDecodeError, GridSourceError, decode_grib_message
from nd_format import (
    SENTINEL,
    SECONDS_PER_DAY,
    DayFileError,
    DayFileIOError,
    GeometryMismatchError,
    HeaderLengthChangedError,
    IndexOutOfRangeError,
    MalformedHeaderError,
)

READER_CACHE_MAX_ENTRIES = int(os.getenv("READER_CACHE_MAX_ENTRIES", "64"))
READER_REOPEN_ATTEMPTS = 3
ND_LOG_LEVEL = os.getenv("LOG_LEVEL", os.getenv("ND_LOG_LEVEL", "INFO")).upper()
ND_LOG_FILE = os.getenv("ND_LOG_FILE", "logs/nd_store.log").strip()
ND_LOG_MAX_BYTES = int(os.getenv("ND_LOG_MAX_BYTES", "5000000"))
ND_LOG_BACKUP_COUNT = int(os.getenv("ND_LOG_BACKUP_COUNT", "3"))
_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_EPOCH = datetime(1970, 1, 1).date()
T = TypeVar("T")


def _log_handlers(log_file: str) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(path, maxBytes=ND_LOG_MAX_BYTES, backupCount=ND_LOG_BACKUP_COUNT))
    formatter = logging.Formatter(_LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def _configure_logging(
    name: str = "nd_store",
    log_file: str = ND_LOG_FILE,
    level_name: str = ND_LOG_LEVEL,
) -> logging.Logger:
    """Attach console and rotating-file handlers to the service logger once.

    Store, reader and GRIB module loggers live below ``nd_store`` and end up in
    the same handlers as request logging.
    """
    level = getattr(logging, level_name.upper(), logging.INFO)
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        return logger
    for handler in _log_handlers(log_file):
        logger.addHandler(handler)
    logger.propagate = False
    logger.info("Logging to %s level=%s", log_file or "console only", logging.getLevelName(level))
    return logger


LOGGER = _configure_logging()


app = FastAPI(title="ND Day File Store")


def _allowed_cors_origins() -> List[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [v.strip() for v in raw.split(",") if v.strip()]
    return ["http://127.0.0.1:8000", "http://localhost:8000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

store = DayFileStore()
_WRITE_LOCK = threading.Lock()
_READERS: Dict[Path, Tuple[DayFileReader, threading.Lock]] = {}
_READERS_GUARD = threading.Lock()


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    _close_readers()


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/metadata")
def metadata() -> Dict[str, object]:
    day_files = [
        {
            "type_code": type_code,
            "day_index": day_index,
            "date": _day_index_to_date(day_index),
            "file": path.name,
        }
        for type_code, day_index, path in store.list_day_files()
    ]
    LOGGER.debug("Metadata served day_files=%d", len(day_files))
    return {
        "root_path": str(store.root_path),
        "interval_minutes": store.interval_minutes,
        "slots_per_day": store.slots_per_day,
        "day_files": day_files,
    }


@app.get("/api/series")
def series(
    type_code: int = Query(...),
    date: str = Query(..., description="UTC day as YYYY-MM-DD"),
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=360),
) -> Dict[str, object]:
    day_index = _parse_day(date)
    try:
        reader, payload = _query_reader(type_code, day_index, lambda r: r.get_series(lat, lon))
    except DayFileError as exc:
        _raise_for_store_error(exc, "Series request")
    if payload is None:
        raise HTTPException(status_code=404, detail=f"No grid cell within tolerance of lat={lat} lon={lon}")
    values = payload["values"]
    return {
        "type_code": type_code,
        "date": date,
        "lat": lat,
        "lon": lon,
        **payload,
        "interval_minutes": reader.header.interval_minutes,
        "slots_with_data": sum(1 for v in values if v is not None),
    }


@app.get("/api/slots")
def slots(
    type_code: int = Query(...),
    date: str = Query(..., description="UTC day as YYYY-MM-DD"),
    lat_index: int = Query(..., ge=0),
    lng_index: int = Query(..., ge=0),
) -> Dict[str, object]:
    day_index = _parse_day(date)
    try:
        _reader, raw = _query_reader(type_code, day_index, lambda r: r.get_slots(lat_index, lng_index))
    except DayFileError as exc:
        _raise_for_store_error(exc, "Slots request")
    return {
        "type_code": type_code,
        "date": date,
        "lat_index": lat_index,
        "lng_index": lng_index,
        "sentinel": SENTINEL,
        "slots": [int(v) for v in raw],
    }


@app.post("/api/ingest")
async def ingest(request: Request) -> Dict[str, object]:
    payload = await request.body()
    if not payload:
        raise HTTPException(status_code=400, detail="Empty GRIB payload")
    return await run_in_threadpool(_ingest_payload, payload)


def _ingest_payload(payload: bytes) -> Dict[str, object]:
    try:
        dataset = decode_grib_message(payload)
        with _WRITE_LOCK:
            result = store.write(dataset)
    except GridDecodeError as exc:
        LOGGER.warning("Ingest decode failed: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except DayFileError as exc:
        _raise_for_store_error(exc, "Ingest")
    except (GridSourceError, RuntimeError) as exc:
        LOGGER.warning("Ingest runtime error: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if result.created:
        _evict_reader(result.path)
    return result.as_dict()


def _raise_for_store_error(exc: DayFileError, context: str) -> None:
    if isinstance(exc, (ValueError, IndexOutOfRangeError)):
        LOGGER.warning("%s invalid: %s", context, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, (GeometryMismatchError, HeaderLengthChangedError, MalformedHeaderError)):
        LOGGER.warning("%s conflicts with stored day file: %s", context, exc)
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, DayFileIOError):
        LOGGER.warning("%s I/O error: %s", context, exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    LOGGER.warning("%s failed: %s", context, exc)
    raise HTTPException(status_code=503, detail=str(exc)) from exc


def _parse_day(value: str) -> int:
    try:
        day = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid date format: {value}") from exc
    return (day - _EPOCH).days


def _day_index_to_date(day_index: int) -> str:
    return datetime.fromtimestamp(day_index * SECONDS_PER_DAY, tz=timezone.utc).strftime("%Y-%m-%d")


def _reader_for(type_code: int, day_index: int) -> Tuple[DayFileReader, threading.Lock]:
    path = store.day_file_path_for_day(type_code, day_index)
    with _READERS_GUARD:
        entry = _READERS.get(path)
        if entry is not None:
            if not entry[0].is_stale():
                return entry
            _READERS.pop(path, None)
            with entry[1]:
                entry[0].close()
        if not path.exists():
            raise HTTPException(status_code=404, detail=f"No day file for type {type_code} on day {day_index}")
        try:
            reader = DayFileReader.open(path)
        except DayFileError as exc:
            _raise_for_store_error(exc, "Open day file")
        entry = (reader, threading.Lock())
        _READERS[path] = entry
        while len(_READERS) > max(1, READER_CACHE_MAX_ENTRIES):
            oldest_path = next(iter(_READERS))
            old_reader, old_lock = _READERS.pop(oldest_path)
            with old_lock:
                old_reader.close()
        LOGGER.debug("Opened reader path=%s cached=%d", path, len(_READERS))
        return entry


def _query_reader(type_code: int, day_index: int, query: Callable[[DayFileReader], T]) -> Tuple[DayFileReader, T]:
    """Run ``query`` on the cached reader while holding its lock.

    A reader handed out by ``_reader_for`` can be evicted and closed before its
    lock is taken; in that case the day file is reopened and the query retried.
    """
    for _attempt in range(READER_REOPEN_ATTEMPTS):
        reader, lock = _reader_for(type_code, day_index)
        with lock:
            if not reader.closed:
                return reader, query(reader)
        LOGGER.debug("Reader evicted before use path=%s; reopening", reader.path)
    raise HTTPException(status_code=503, detail=f"Day file reader for type {type_code} on day {day_index} kept being evicted")


def _evict_reader(path: Path) -> None:
    with _READERS_GUARD:
        entry = _READERS.pop(path, None)
    if entry is not None:
        with entry[1]:
            entry[0].close()


def _close_readers() -> None:
    with _READERS_GUARD:
        entries = list(_READERS.values())
        _READERS.clear()
    for reader, lock in entries:
        with lock:
            reader.close()
