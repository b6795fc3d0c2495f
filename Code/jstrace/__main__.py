#!/usr/bin/env python3
"""
Rebuild a JavaScript API trace from a raw instrumentation log and save it as JSON.

Usage
-----
python -m jstrace chrome_stderr.log --output trace.json
python -m jstrace api_logs.json --format json --flat
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Iterator, List, Optional

import ijson
from tqdm import tqdm

from .accumulator import TraceAccumulator
from .lines import DEFAULT_LINE_FORMAT, LINE_FORMATS
from .serialize import to_dict, to_records


def _is_json_array(path: Path) -> bool:
    with path.open("rb") as fp:
        for chunk in iter(lambda: fp.read(1), b""):
            if not chunk.isspace():
                return chunk == b"["
    return False


def iter_records(path: Path, line_format: str) -> Iterator[Any]:
    """
    Yield raw records from a trace file. JSON array files are streamed item
    by item so large captures never have to fit in memory.
    """
    if line_format == "json" and _is_json_array(path):
        with path.open("rb") as fp:
            yield from ijson.items(fp, "item")
        return
    with path.open("r", encoding="utf-8", errors="replace") as fp:
        yield from fp


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="jstrace", description="Rebuild a JS API call trace from an instrumentation log.")
    parser.add_argument("trace_file", type=Path, help="Raw instrumentation log (one record per line, or a JSON array)")
    parser.add_argument("--format", default=DEFAULT_LINE_FORMAT, choices=sorted(LINE_FORMATS),
                        help="Wire format of the records")
    parser.add_argument("--output", type=Path, default=None, help="Output JSON file (default: <trace_file>.trace.json)")
    parser.add_argument("--flat", action="store_true", help="Write flat {id, parent, children} records instead of the nested view")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-file", default=None, help="Write log messages to this file instead of stderr")
    parser.add_argument("--no-progress", action="store_true", help="Hide the progress bar")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(filename=args.log_file, level=getattr(logging, args.log_level),
                        format='%(levelname)s: %(message)s')

    trace_file: Path = args.trace_file.expanduser()
    output: Path = args.output or trace_file.with_name(trace_file.name + ".trace.json")

    accumulator = TraceAccumulator(args.format)
    status = 0
    try:
        records = iter_records(trace_file, args.format)
        for line_num, raw in enumerate(tqdm(records, desc="Reading trace", unit="line", disable=args.no_progress), 1):
            accumulator.ingest(raw, line_num)
    except FileNotFoundError:
        logging.error(f"Error: File not found at {trace_file}")
        return 1
    except OSError as e:
        logging.error(f"Could not read {trace_file}: {e}")
        return 1
    except ijson.JSONError as e:
        # keep whatever was read before the bad record
        logging.error(f"Could not decode JSON from {trace_file}: {e}")
        status = 1

    trace = accumulator.finalize()
    data = to_records(trace) if args.flat else to_dict(trace)
    try:
        with output.open("w", encoding="utf-8") as fp:
            json.dump(data, fp, ensure_ascii=False, indent=4)
    except OSError as e:
        logging.error(f"Could not write {output}: {e}")
        return 1

    print(f"✓ Wrote {output} ({trace.stored_calls} calls stored, {trace.ignored_calls} ignored)")
    return status


if __name__ == "__main__":
    sys.exit(main())
