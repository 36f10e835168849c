import asyncio
import logging
import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest.mock import patch

import numpy as np

os.environ.setdefault("ND_LOG_FILE", "")
os.environ.setdefault("ND_ROOT_PATH", tempfile.mkdtemp(prefix="nd-api-"))

try:
    import app as app_module
except ModuleNotFoundError:
    app_module = None

from day_file_store import DayFileStore
from grib_source import GridDataset, GridDecodeError

DAY_START = datetime(2024, 3, 10, tzinfo=timezone.utc)


def _dataset(valid_time, values=(1.5, -2.25, 3.0, 4.0), type_code=7):
    return GridDataset(
        type_code=type_code,
        nx=2,
        ny=2,
        la1=47.0,
        la2=46.0,
        lo1=8.0,
        lo2=9.0,
        dx=1.0,
        dy=1.0,
        values=np.asarray(values, dtype=np.float64),
        latitudes=np.array([47.0, 46.0]),
        longitudes=np.array([8.0, 9.0]),
        valid_time=valid_time,
    )


class _FakeRequest:
    def __init__(self, body: bytes) -> None:
        self._body = body

    async def body(self) -> bytes:
        return self._body


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class ApiEndpointTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = DayFileStore(root_path=Path(self._tmp.name), interval_minutes=10)
        self._patcher = patch.object(app_module, "store", self.store)
        self._patcher.start()
        app_module._close_readers()

    def tearDown(self):
        app_module._close_readers()
        self._patcher.stop()
        self._tmp.cleanup()

    def test_health(self):
        self.assertEqual(app_module.health(), {"status": "ok"})

    def test_metadata_lists_day_files(self):
        self.store.write(_dataset(DAY_START))
        self.store.write(_dataset(DAY_START + timedelta(days=1), type_code=9))
        payload = app_module.metadata()
        self.assertEqual(payload["interval_minutes"], 10)
        self.assertEqual(payload["slots_per_day"], 144)
        self.assertEqual(
            [(f["type_code"], f["date"]) for f in payload["day_files"]],
            [(7, "2024-03-10"), (9, "2024-03-11")],
        )

    def test_series_returns_dequantized_values(self):
        self.store.write(_dataset(DAY_START + timedelta(minutes=30)))
        payload = app_module.series(type_code=7, date="2024-03-10", lat=46.1, lon=8.2)
        self.assertEqual((payload["lat_index"], payload["lng_index"]), (1, 0))
        self.assertEqual(payload["values"][3], 3.0)
        self.assertEqual(payload["slots_with_data"], 1)
        self.assertEqual(payload["interval_minutes"], 10)
        self.assertEqual(payload["valid_times_utc"][3], "2024-03-10T00:30:00Z")

    def test_series_sees_appended_slots(self):
        self.store.write(_dataset(DAY_START))
        first = app_module.series(type_code=7, date="2024-03-10", lat=47.0, lon=8.0)
        self.assertEqual(first["slots_with_data"], 1)
        self.store.write(_dataset(DAY_START + timedelta(minutes=10), values=(0.5, 0.0, 0.0, 0.0)))
        second = app_module.series(type_code=7, date="2024-03-10", lat=47.0, lon=8.0)
        self.assertEqual(second["slots_with_data"], 2)
        self.assertEqual(second["values"][:2], [1.5, 0.5])

    def test_series_cell_miss_is_404(self):
        self.store.write(_dataset(DAY_START))
        with self.assertRaises(app_module.HTTPException) as ctx:
            app_module.series(type_code=7, date="2024-03-10", lat=10.0, lon=8.0)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_missing_day_file_is_404(self):
        with self.assertRaises(app_module.HTTPException) as ctx:
            app_module.series(type_code=7, date="2024-03-11", lat=47.0, lon=8.0)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_bad_date_is_400(self):
        with self.assertRaises(app_module.HTTPException) as ctx:
            app_module.slots(type_code=7, date="10.03.2024", lat_index=0, lng_index=0)
        self.assertEqual(ctx.exception.status_code, 400)

    def test_slots_returns_raw_values(self):
        self.store.write(_dataset(DAY_START + timedelta(minutes=20)))
        payload = app_module.slots(type_code=7, date="2024-03-10", lat_index=0, lng_index=1)
        self.assertEqual(len(payload["slots"]), 144)
        self.assertEqual(payload["slots"][2], -225)
        self.assertEqual(payload["slots"][0], payload["sentinel"])

    def test_slots_out_of_range_is_400(self):
        self.store.write(_dataset(DAY_START))
        with self.assertRaises(app_module.HTTPException) as ctx:
            app_module.slots(type_code=7, date="2024-03-10", lat_index=2, lng_index=0)
        self.assertEqual(ctx.exception.status_code, 400)

    def test_series_reopens_reader_evicted_before_use(self):
        self.store.write(_dataset(DAY_START))
        real_reader_for = app_module._reader_for
        handed_out = []

        def _evicted_after_lookup(type_code, day_index):
            entry = real_reader_for(type_code, day_index)
            if not handed_out:
                app_module._evict_reader(entry[0].path)
            handed_out.append(entry)
            return entry

        with patch.object(app_module, "_reader_for", side_effect=_evicted_after_lookup):
            payload = app_module.series(type_code=7, date="2024-03-10", lat=47.0, lon=8.0)

        self.assertEqual(payload["values"][0], 1.5)
        self.assertEqual(len(handed_out), 2)
        self.assertTrue(handed_out[0][0].closed)
        self.assertFalse(handed_out[1][0].closed)

    def test_slots_survive_cache_overflow_between_lookup_and_read(self):
        self.store.write(_dataset(DAY_START))
        self.store.write(_dataset(DAY_START + timedelta(days=1), values=(9.0, 9.0, 9.0, 9.0)))
        real_reader_for = app_module._reader_for
        handed_out = []

        def _overflowed_after_lookup(type_code, day_index):
            entry = real_reader_for(type_code, day_index)
            if not handed_out:
                # Opening another day file pushes this entry out of a one-slot cache.
                real_reader_for(type_code, day_index + 1)
            handed_out.append(entry)
            return entry

        with patch.object(app_module, "READER_CACHE_MAX_ENTRIES", 1):
            with patch.object(app_module, "_reader_for", side_effect=_overflowed_after_lookup):
                payload = app_module.slots(type_code=7, date="2024-03-10", lat_index=0, lng_index=0)

        self.assertEqual(payload["slots"][0], 150)
        self.assertEqual(len(handed_out), 2)
        self.assertTrue(handed_out[0][0].closed)

    def test_reader_that_stays_evicted_is_503(self):
        self.store.write(_dataset(DAY_START))
        real_reader_for = app_module._reader_for

        def _always_evicted(type_code, day_index):
            entry = real_reader_for(type_code, day_index)
            app_module._evict_reader(entry[0].path)
            return entry

        with patch.object(app_module, "_reader_for", side_effect=_always_evicted):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.series(type_code=7, date="2024-03-10", lat=47.0, lon=8.0)
        self.assertEqual(ctx.exception.status_code, 503)

    def test_configure_logging_writes_rotating_file_once(self):
        log_path = Path(self._tmp.name) / "logs" / "service.log"
        logger = app_module._configure_logging("nd_store.logging_check", log_file=str(log_path), level_name="debug")
        try:
            again = app_module._configure_logging(
                "nd_store.logging_check", log_file=str(log_path), level_name="DEBUG"
            )
            self.assertIs(again, logger)
            self.assertEqual(len(logger.handlers), 2)
            self.assertTrue(any(isinstance(h, RotatingFileHandler) for h in logger.handlers))
            self.assertEqual(logger.level, logging.DEBUG)
            logger.debug("Slot appended path=%s", "7_19792.nd")
            for handler in logger.handlers:
                handler.flush()
            self.assertIn("[nd_store.logging_check] Slot appended path=7_19792.nd", log_path.read_text())
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()

    def test_ingest_writes_decoded_message(self):
        with patch.object(app_module, "decode_grib_message", return_value=_dataset(DAY_START)) as decode:
            payload = asyncio.run(app_module.ingest(_FakeRequest(b"GRIB-bytes")))
        decode.assert_called_once_with(b"GRIB-bytes")
        self.assertTrue(payload["created"])
        self.assertEqual(payload["slot_index"], 0)
        self.assertTrue(Path(payload["path"]).exists())

    def test_ingest_empty_body_is_400(self):
        with self.assertRaises(app_module.HTTPException) as ctx:
            asyncio.run(app_module.ingest(_FakeRequest(b"")))
        self.assertEqual(ctx.exception.status_code, 400)

    def test_ingest_decode_failure_is_400(self):
        with patch.object(app_module, "decode_grib_message", side_effect=GridDecodeError("not GRIB")):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module._ingest_payload(b"junk")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_ingest_misaligned_time_is_400(self):
        dataset = _dataset(DAY_START + timedelta(minutes=5))
        with patch.object(app_module, "decode_grib_message", return_value=dataset):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module._ingest_payload(b"GRIB")
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(list(Path(self._tmp.name).iterdir()), [])

    def test_ingest_geometry_conflict_is_409(self):
        self.store.write(_dataset(DAY_START))
        other = GridDataset(
            type_code=7, nx=1, ny=1, la1=47.0, la2=47.0, lo1=8.0, lo2=8.0, dx=1.0, dy=1.0,
            values=[1.0], latitudes=[47.0], longitudes=[8.0], valid_time=DAY_START + timedelta(minutes=10),
        )
        with patch.object(app_module, "decode_grib_message", return_value=other):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module._ingest_payload(b"GRIB")
        self.assertEqual(ctx.exception.status_code, 409)


if __name__ == "__main__":
    unittest.main()
