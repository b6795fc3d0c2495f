"""
Entity types for a reconstructed JavaScript API trace.

Every entity lives in a flat, ID-indexed container owned by the Trace.
Parent/children fields only ever hold integer IDs (0 means "no parent"),
so the whole tree can be stored and rebuilt from flat records.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional


@dataclass
class Arg:
    """A single argument (or return value) from an API call."""
    type: str
    value: str


@dataclass
class OpenWPMResults:
    canvas: bool = False
    canvas_font: bool = False
    web_rtc: bool = False
    audio: bool = False
    battery: bool = False


@dataclass
class Call:
    call_type: str
    call_class: str
    call_func: str
    args: List[Arg] = field(default_factory=list)
    ret: Optional[Arg] = None

    id: int = 0
    parent: int = 0
    children: List[int] = field(default_factory=list)
    execution: int = 0
    line_num: int = 0
    closed: bool = False

    @property
    def symbol(self) -> str:
        if self.call_class:
            return f"{self.call_class}.{self.call_func}"
        return self.call_func

    def add_child(self, call_id: int) -> None:
        if self.closed:
            raise ValueError(f"Call {self.id} ({self.symbol}) is closed and cannot take child {call_id}")
        self.children.append(call_id)


@dataclass
class Execution:
    """
    A single run of a single script. A script has one execution for its
    initial load and one more for every callback re-entry.
    Children are the IDs of the top-level calls only.
    """
    isolate: str
    script_id: str
    ts: str = ""
    end_ts: str = ""
    callback: bool = False

    id: int = 0
    parent: int = 0
    children: List[int] = field(default_factory=list)
    closed: bool = False


@dataclass
class Script:
    """A script, identified by a script ID that is only unique per isolate."""
    isolate: str
    script_id: str
    base_url: str = ""
    openwpm: Optional[OpenWPMResults] = None

    id: int = 0
    parent: int = 0
    children: List[int] = field(default_factory=list)


@dataclass
class Isolate:
    name: str
    scripts: Dict[str, int] = field(default_factory=dict)

    id: int = 0
    parent: int = 0
    children: List[int] = field(default_factory=list)


@dataclass
class Trace:
    """
    Root of a reconstructed trace.

    The four arenas (calls, executions, scripts, isolates) are keyed by node
    ID. `isolate_ids` maps the engine's isolate identifier to the Isolate's
    node ID.
    """
    id: int = 0
    children: List[int] = field(default_factory=list)

    calls: Dict[int, Call] = field(default_factory=dict)
    executions: Dict[int, Execution] = field(default_factory=dict)
    scripts: Dict[int, Script] = field(default_factory=dict)
    isolates: Dict[int, Isolate] = field(default_factory=dict)
    isolate_ids: Dict[str, int] = field(default_factory=dict)

    stored_calls: int = 0
    ignored_calls: int = 0
    ignored_by_kind: Dict[str, int] = field(default_factory=dict)
    finalized: bool = False

    # ---- lookups by natural key ----

    @property
    def isolates_by_name(self) -> Dict[str, Isolate]:
        return {name: self.isolates[node_id] for name, node_id in self.isolate_ids.items()}

    def isolate(self, name: str) -> Isolate:
        return self.isolates[self.isolate_ids[name]]

    def script(self, isolate: str, script_id: str) -> Script:
        return self.scripts[self.isolate(isolate).scripts[script_id]]

    # ---- walking the tree ----

    def scripts_of(self, isolate: Isolate) -> List[Script]:
        return [self.scripts[i] for i in isolate.children]

    def executions_of(self, script: Script) -> List[Execution]:
        return [self.executions[i] for i in script.children]

    def calls_of(self, execution: Execution) -> List[Call]:
        """Top-level calls of an execution, in call order."""
        return [self.calls[i] for i in execution.children]

    def children_of(self, call: Call) -> List[Call]:
        return [self.calls[i] for i in call.children]

    def walk_calls(self, execution: Execution) -> Iterator[Call]:
        """Depth-first, pre-order walk over every call of an execution."""
        pending = list(reversed(self.calls_of(execution)))
        while pending:
            call = pending.pop()
            yield call
            pending.extend(reversed(self.children_of(call)))

    def annotate_script(self, isolate: str, script_id: str, results: OpenWPMResults) -> Script:
        """Attach fingerprinting results to a script. Executions are left untouched."""
        script = self.script(isolate, script_id)
        script.openwpm = results
        return script
