"""
Line classification for raw instrumentation records.

Each raw record becomes one `Line`. Classification never raises on bad
input: records that carry the trace marker but are missing fields come back
as ERROR lines, unknown event kinds as UNKNOWN lines, and anything that is
not a trace record at all (blank lines, log banners) as OTHER lines.

Two wire formats are registered in LINE_FORMATS:

    pipe  [1234:1234:1019/101500.123456:INFO:console.cc(42)] JSTRACE|0x1a2b|call|method|Canvas|getContext
    json  {"isolate": "0x1a2b", "event": "call", "type": "method", "class": "Canvas", "func": "getContext"}
"""

import enum
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

TRACE_MARKER = "JSTRACE|"
DEFAULT_LINE_FORMAT = "pipe"

# Chromium log prefix, e.g. "[1234:1234:1019/101500.123456:INFO:console.cc(42)] "
LOG_HEADER_RE = re.compile(
    r"^\[(?P<pid>\d+):(?P<tid>\d+):(?P<ts>\d{4}/\d{6}(?:\.\d+)?):(?P<level>[A-Z_]+):(?P<source>[^\]]*)\]\s?"
)


class LineType(enum.IntEnum):
    ERROR = -1
    UNKNOWN = 0
    CALL = 1
    ARG = 2
    RET = 3
    OTHER = 4
    CONTROL = 5


class ControlKind(enum.Enum):
    ISOLATE = "isolate"
    SCRIPT = "script"
    BEGIN = "begin"
    END = "end"


@dataclass
class Line:
    lt: LineType
    line_num: int = 0
    kind: str = ""          # record kind as written ("call", "arg", ...), kept for diagnostics
    isolate: str = ""
    ts: str = ""

    call_type: str = ""
    call_class: str = ""
    call_func: str = ""

    arg_type: str = ""
    arg_val: str = ""
    is_ret: bool = False

    control: Optional[ControlKind] = None
    script_id: str = ""
    base_url: str = ""
    is_begin: bool = False
    is_callback: bool = False

    reason: str = ""        # why an ERROR/UNKNOWN line was rejected


def _error(line_num: int, kind: str, isolate: str, ts: str, reason: str) -> Line:
    return Line(LineType.ERROR, line_num=line_num, kind=kind, isolate=isolate, ts=ts, reason=reason)


def build_line(line_num: int, isolate: str, kind: str, ts: str, fields: Dict[str, Optional[str]]) -> Line:
    """
    Shared structural checks for every wire format.

    `fields` holds the record's remaining values by name; a value of None
    means the field was absent, "" means it was present but empty.
    """
    if kind not in ("call", "arg", "ret") and kind not in {c.value for c in ControlKind}:
        return Line(LineType.UNKNOWN, line_num=line_num, kind=kind, isolate=isolate, ts=ts,
                    reason=f"unknown record kind '{kind}'")
    if not isolate:
        return _error(line_num, kind, isolate, ts, "missing isolate")

    if kind == "call":
        call_type, call_class, call_func = fields.get("type"), fields.get("class"), fields.get("func")
        if not call_type or call_class is None or not call_func:
            return _error(line_num, kind, isolate, ts, "call record needs type, class and func")
        return Line(LineType.CALL, line_num=line_num, kind=kind, isolate=isolate, ts=ts,
                    call_type=call_type, call_class=call_class, call_func=call_func)

    if kind in ("arg", "ret"):
        arg_type, arg_val = fields.get("type"), fields.get("value")
        if not arg_type or arg_val is None:
            return _error(line_num, kind, isolate, ts, f"{kind} record needs type and value")
        return Line(LineType.RET if kind == "ret" else LineType.ARG, line_num=line_num, kind=kind,
                    isolate=isolate, ts=ts, arg_type=arg_type, arg_val=arg_val, is_ret=kind == "ret")

    control = ControlKind(kind)
    if control is ControlKind.ISOLATE:
        return Line(LineType.CONTROL, line_num=line_num, kind=kind, isolate=isolate, ts=ts, control=control)

    script_id = fields.get("script_id")
    if not script_id:
        return _error(line_num, kind, isolate, ts, f"{kind} record needs a script id")
    return Line(LineType.CONTROL, line_num=line_num, kind=kind, isolate=isolate, ts=ts, control=control,
                script_id=script_id, base_url=fields.get("url") or "",
                is_begin=control is ControlKind.BEGIN,
                is_callback=(fields.get("origin") or "") == "callback")


class LineFormat:
    """A wire format for raw trace records."""
    name = ""

    def classify(self, raw: Any, line_num: int) -> Line:
        raise NotImplementedError


class PipeLineFormat(LineFormat):
    """Marker-prefixed, '|'-separated records, optionally behind a Chromium log header."""
    name = "pipe"

    # field names after "isolate|kind|", the last one takes the rest of the line
    FIELDS: Dict[str, Tuple[str, ...]] = {
        "call": ("type", "class", "func"),
        "arg": ("type", "value"),
        "ret": ("type", "value"),
        "isolate": (),
        "script": ("script_id", "url"),
        "begin": ("script_id", "origin"),
        "end": ("script_id", "origin"),
    }

    def classify(self, raw: Any, line_num: int) -> Line:
        text = raw.rstrip("\r\n") if isinstance(raw, str) else str(raw)
        ts = ""
        header = LOG_HEADER_RE.match(text)
        if header:
            ts = header["ts"]
            text = text[header.end():]
        if not text.startswith(TRACE_MARKER):
            return Line(LineType.OTHER, line_num=line_num, ts=ts)

        head = text[len(TRACE_MARKER):].split("|", 2)
        isolate = head[0]
        kind = head[1] if len(head) > 1 else ""
        if not kind:
            return _error(line_num, kind, isolate, ts, "missing record kind")

        names = self.FIELDS.get(kind, ())
        values: List[str] = []
        if names and len(head) > 2:
            values = head[2].split("|", len(names) - 1)
        fields: Dict[str, Optional[str]] = {n: (values[i] if i < len(values) else None) for i, n in enumerate(names)}
        return build_line(line_num, isolate, kind, ts, fields)


class JsonLineFormat(LineFormat):
    """One JSON object per record, given as text or as an already decoded dict."""
    name = "json"

    KEYS = ("type", "class", "func", "value", "script_id", "url")

    def classify(self, raw: Any, line_num: int) -> Line:
        record = raw
        if isinstance(raw, (str, bytes)):
            if not raw.strip():
                return Line(LineType.OTHER, line_num=line_num)
            try:
                record = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                return _error(line_num, "", "", "", f"undecodable JSON: {e}")
        if not isinstance(record, dict):
            return _error(line_num, "", "", "", f"expected a JSON object, got {type(record).__name__}")
        if "event" not in record:
            return Line(LineType.OTHER, line_num=line_num)

        fields: Dict[str, Optional[str]] = {}
        for key in self.KEYS:
            fields[key] = None if record.get(key) is None else str(record[key])
        fields["origin"] = "callback" if record.get("callback") else ""
        return build_line(line_num, str(record.get("isolate") or ""), str(record["event"]),
                          str(record.get("ts") or ""), fields)


LINE_FORMATS: Dict[str, LineFormat] = {
    PipeLineFormat.name: PipeLineFormat(),
    JsonLineFormat.name: JsonLineFormat(),
}


def get_line_format(name: str) -> LineFormat:
    key = name.strip().lower()
    if key not in LINE_FORMATS:
        raise KeyError(f"Unknown line format '{name}'. Available: {', '.join(sorted(LINE_FORMATS))}")
    return LINE_FORMATS[key]


def classify_line(raw: Any, line_num: int, line_format: str = DEFAULT_LINE_FORMAT) -> Line:
    return get_line_format(line_format).classify(raw, line_num)
