"""Rebuild a hierarchical JavaScript API call trace from a flat instrumentation log."""

from .accumulator import TraceAccumulator, reconstruct
from .errors import JSTraceError, RecordFormatError, TraceFinalizedError
from .lines import ControlKind, Line, LineType, classify_line, get_line_format
from .model import Arg, Call, Execution, Isolate, OpenWPMResults, Script, Trace
from .serialize import from_records, to_dict, to_records

__all__ = [
    "Arg",
    "Call",
    "ControlKind",
    "Execution",
    "Isolate",
    "JSTraceError",
    "Line",
    "LineType",
    "OpenWPMResults",
    "RecordFormatError",
    "Script",
    "Trace",
    "TraceAccumulator",
    "TraceFinalizedError",
    "classify_line",
    "from_records",
    "get_line_format",
    "reconstruct",
    "to_dict",
    "to_records",
]
