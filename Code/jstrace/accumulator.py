"""
The trace accumulator: the single owner of a reconstruction run.

Feed it classified lines (or raw records) in the order the engine emitted
them, then call finalize() to close whatever is still open and get the
Trace back. Bad input never stops a run; it is dropped and counted in
`ignored_calls`.
"""

import logging
import threading
from typing import Any, Iterable, Optional

from .aggregate import Aggregator
from .errors import TraceFinalizedError
from .executions import ExecutionBuilder
from .lines import DEFAULT_LINE_FORMAT, Line, LineType, get_line_format
from .model import Arg, OpenWPMResults, Script, Trace
from .stack import CallStackTracker


class TraceAccumulator:

    def __init__(self, line_format: str = DEFAULT_LINE_FORMAT) -> None:
        self.line_format = get_line_format(line_format)
        self.aggregator = Aggregator()
        self.trace: Trace = self.aggregator.trace
        self.tracker = CallStackTracker(self.trace)
        self.builder = ExecutionBuilder(self.tracker, self.aggregator)
        self._lock = threading.RLock()
        self._line_num = 0

    def _ignore(self, line: Line, kind: str, reason: str) -> None:
        trace = self.trace
        trace.ignored_calls += 1
        trace.ignored_by_kind[kind] = trace.ignored_by_kind.get(kind, 0) + 1
        logging.debug(f"Ignoring line {line.line_num} ({kind}): {reason}")

    def ingest(self, raw: Any, line_num: Optional[int] = None) -> Line:
        """Classify one raw record with this run's line format and ingest it."""
        with self._lock:
            if line_num is None:
                line_num = self._line_num + 1
            self._line_num = line_num
            line = self.line_format.classify(raw, line_num)
            self.ingest_line(line)
            return line

    def ingest_all(self, records: Iterable[Any]) -> "TraceAccumulator":
        for line_num, raw in enumerate(records, 1):
            self.ingest(raw, line_num)
        return self

    def ingest_line(self, line: Line) -> None:
        with self._lock:
            if self.trace.finalized:
                raise TraceFinalizedError(f"Cannot ingest line {line.line_num}: trace already finalized")

            lt = line.lt
            if lt == LineType.OTHER:
                return

            elif lt == LineType.UNKNOWN:
                self._ignore(line, "unknown", line.reason)

            elif lt == LineType.ERROR:
                self._ignore(line, line.kind or "malformed", line.reason)

            elif lt == LineType.CONTROL:
                if not self.builder.on_control(line):
                    self._ignore(line, line.kind, f"no open execution of script {line.script_id} in isolate {line.isolate}")

            elif lt == LineType.CALL:
                frame = self.builder.frame_for_call(line)
                call = self.aggregator.new_call(line)
                self.tracker.push_call(frame, call)
                self.trace.stored_calls += 1

            elif lt == LineType.ARG:
                self.tracker.touch(line.isolate, line.ts)
                if not self.tracker.add_arg(line.isolate, Arg(line.arg_type, line.arg_val)):
                    self._ignore(line, "arg", f"no open call in isolate {line.isolate}")

            elif lt == LineType.RET:
                self.tracker.touch(line.isolate, line.ts)
                if not self.tracker.set_return(line.isolate, Arg(line.arg_type, line.arg_val)):
                    self._ignore(line, "ret", f"no open call in isolate {line.isolate}")

            else:
                raise ValueError(f"Unhandled line type {lt!r} on line {line.line_num}")

    def finalize(self) -> Trace:
        """Close every open execution and call, and return the finished trace. Safe to call twice."""
        with self._lock:
            trace = self.trace
            if trace.finalized:
                return trace
            closed = self.builder.close_all()
            trace.finalized = True
            logging.info(f"Trace finalized: {len(trace.isolates)} isolate(s), {len(trace.scripts)} script(s), "
                         f"{len(trace.executions)} execution(s), {trace.stored_calls} stored call(s), "
                         f"{trace.ignored_calls} ignored, {closed} execution(s) closed at end of input")
            return trace

    def annotate_script(self, isolate: str, script_id: str, results: OpenWPMResults) -> Script:
        with self._lock:
            return self.trace.annotate_script(isolate, script_id, results)


def reconstruct(records: Iterable[Any], line_format: str = DEFAULT_LINE_FORMAT) -> Trace:
    """Build a finished trace from an ordered sequence of raw records."""
    return TraceAccumulator(line_format).ingest_all(records).finalize()
