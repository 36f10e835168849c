#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from typing import Iterator, List, Tuple

from day_file_store import DayFileStore
from grib_source import GridSourceError, decode_grib_message, fetch_grib_payload, iter_grib_messages
from nd_format import DayFileError


def _payloads(source: str) -> Iterator[Tuple[str, bytes]]:
    if source.startswith(("http://", "https://")):
        yield source, fetch_grib_payload(source)
        return
    for index, payload in enumerate(iter_grib_messages(source)):
        yield f"{source}#{index}", payload


def _parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ingest GRIB messages into per-day slot files.")
    parser.add_argument("sources", nargs="+", help="GRIB file paths or http(s) URLs")
    parser.add_argument("--root", default=None, help="day file root directory (default: ND_ROOT_PATH)")
    parser.add_argument("--interval", type=int, default=None, help="slot width in minutes (default: ND_INTERVAL_MINUTES)")
    return parser.parse_args(argv)


def main(argv: List[str] | None = None) -> int:
    args = _parse_args(argv)
    store = DayFileStore(root_path=args.root, interval_minutes=args.interval)

    written = 0
    failed = 0
    for source in args.sources:
        try:
            for label, payload in _payloads(source):
                try:
                    result = store.write(decode_grib_message(payload))
                except (DayFileError, GridSourceError) as exc:
                    failed += 1
                    print(json.dumps({"source": label, "status": "failed", "error": f"{type(exc).__name__}: {exc}"}))
                    continue
                written += 1
                print(json.dumps({"source": label, "status": "ok", **result.as_dict()}))
        except (GridSourceError, OSError) as exc:
            failed += 1
            print(json.dumps({"source": source, "status": "failed", "error": f"{type(exc).__name__}: {exc}"}))

    print(f"written={written} failed={failed}")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
