"""
Per-isolate call stacks.

Each isolate gets an IsolateContext the first time it is seen. The context
holds a stack of open execution frames (a callback can re-enter the engine
while a call of the outer execution is still open), and every frame holds
its own LIFO stack of open call IDs.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .model import Arg, Call, Trace


class CallStack:
    """LIFO stack of open call IDs."""

    def __init__(self) -> None:
        self._ids: List[int] = []

    def __len__(self) -> int:
        return len(self._ids)

    def __bool__(self) -> bool:
        return bool(self._ids)

    def push(self, call_id: int) -> None:
        self._ids.append(call_id)

    def top(self) -> int:
        return self._ids[-1]

    def pop(self) -> int:
        return self._ids.pop()


@dataclass
class ExecutionFrame:
    execution_id: int
    script_id: str
    explicit: bool                      # opened by a begin marker rather than by a call
    calls: CallStack = field(default_factory=CallStack)


@dataclass
class IsolateContext:
    name: str
    frames: List[ExecutionFrame] = field(default_factory=list)
    current_script: Optional[str] = None
    last_ts: str = ""

    @property
    def frame(self) -> Optional[ExecutionFrame]:
        return self.frames[-1] if self.frames else None


class CallStackTracker:
    """Attaches calls, arguments and return values to the right open call."""

    def __init__(self, trace: Trace) -> None:
        self.trace = trace
        self.contexts: Dict[str, IsolateContext] = {}

    def context(self, isolate: str) -> IsolateContext:
        ctx = self.contexts.get(isolate)
        if ctx is None:
            ctx = self.contexts[isolate] = IsolateContext(isolate)
        return ctx

    def touch(self, isolate: str, ts: str) -> None:
        ctx = self.contexts.get(isolate)
        if ctx is not None and ts:
            ctx.last_ts = ts

    def _open_call(self, isolate: str) -> Optional[Call]:
        ctx = self.contexts.get(isolate)
        frame = ctx.frame if ctx else None
        if frame is None or not frame.calls:
            return None
        return self.trace.calls[frame.calls.top()]

    def push_call(self, frame: ExecutionFrame, call: Call) -> None:
        call.execution = frame.execution_id
        if frame.calls:
            parent = self.trace.calls[frame.calls.top()]
            call.parent = parent.id
            parent.add_child(call.id)
        else:
            call.parent = 0
            self.trace.executions[frame.execution_id].children.append(call.id)
        frame.calls.push(call.id)

    def add_arg(self, isolate: str, arg: Arg) -> bool:
        call = self._open_call(isolate)
        if call is None:
            return False
        call.args.append(arg)
        return True

    def set_return(self, isolate: str, ret: Arg) -> bool:
        call = self._open_call(isolate)
        if call is None:
            return False
        call.ret = ret
        call.closed = True
        self.contexts[isolate].frame.calls.pop()
        return True

    def drain(self, frame: ExecutionFrame) -> int:
        """Close every call still open on a frame. Returns how many were closed."""
        closed = 0
        while frame.calls:
            call = self.trace.calls[frame.calls.pop()]
            call.closed = True
            closed += 1
        if closed:
            logging.debug(f"Implicitly closed {closed} open call(s) of execution {frame.execution_id}")
        return closed
