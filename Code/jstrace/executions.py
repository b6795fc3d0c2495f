"""
Execution boundaries.

A script's initial run is opened implicitly by the first call seen for it;
every callback re-entry is opened by a begin marker and closed by the
matching end marker. A begin that arrives while a call is still open
(synchronous re-entry) pushes a new frame, and the outer execution resumes
once the inner one ends. A begin that finds an implicit run with no open
call closes that run first. A script marker for another script ends the
top run, implicit or explicit, unless a call is still open on it.
"""

import logging

from .aggregate import Aggregator
from .lines import ControlKind, Line
from .model import Execution
from .stack import CallStackTracker, ExecutionFrame, IsolateContext

# Script ID used for calls made before any script marker was seen on the isolate
UNATTRIBUTED_SCRIPT_ID = "0"


class ExecutionBuilder:

    def __init__(self, tracker: CallStackTracker, aggregator: Aggregator) -> None:
        self.tracker = tracker
        self.aggregator = aggregator

    def _open(self, ctx: IsolateContext, script_id: str, ts: str, callback: bool, explicit: bool) -> ExecutionFrame:
        execution = self.aggregator.new_execution(ctx.name, script_id, ts=ts or ctx.last_ts, callback=callback)
        frame = ExecutionFrame(execution_id=execution.id, script_id=script_id, explicit=explicit)
        ctx.frames.append(frame)
        logging.debug(f"Opened execution {execution.id} for script {script_id} in isolate {ctx.name}"
                      f"{' (callback)' if callback else ''}")
        return frame

    def close_top(self, ctx: IsolateContext) -> Execution:
        frame = ctx.frames.pop()
        self.tracker.drain(frame)
        execution = self.tracker.trace.executions[frame.execution_id]
        execution.end_ts = ctx.last_ts
        execution.closed = True
        return execution

    def close_all(self) -> int:
        closed = 0
        for ctx in self.tracker.contexts.values():
            while ctx.frames:
                self.close_top(ctx)
                closed += 1
        return closed

    def frame_for_call(self, line: Line) -> ExecutionFrame:
        """The frame a new call belongs to, opening an implicit execution if none is open."""
        ctx = self.tracker.context(line.isolate)
        if line.ts:
            ctx.last_ts = line.ts
        self.aggregator.ensure_isolate(line.isolate)
        if ctx.frame is not None:
            return ctx.frame
        script_id = ctx.current_script or UNATTRIBUTED_SCRIPT_ID
        return self._open(ctx, script_id, line.ts, callback=False, explicit=False)

    def on_control(self, line: Line) -> bool:
        """Apply a control line. Returns False when an end marker matches no open execution."""
        ctx = self.tracker.context(line.isolate)
        if line.ts:
            ctx.last_ts = line.ts

        if line.control is ControlKind.ISOLATE:
            if line.isolate in self.aggregator.trace.isolate_ids:
                logging.debug(f"Line {line.line_num}: isolate {line.isolate} announced again")
            self.aggregator.ensure_isolate(line.isolate)

        elif line.control is ControlKind.SCRIPT:
            self.aggregator.ensure_script(line.isolate, line.script_id, line.base_url)
            frame = ctx.frame
            # a script compiled while a call is open (eval, document.write) does not end the run
            if frame is not None and not frame.calls and frame.script_id != line.script_id:
                self.close_top(ctx)
            ctx.current_script = line.script_id

        elif line.control is ControlKind.BEGIN:
            self.aggregator.ensure_script(line.isolate, line.script_id, line.base_url)
            frame = ctx.frame
            # an implicit run with nothing open has finished; only an open call can be re-entered
            if frame is not None and not frame.explicit and not frame.calls:
                self.close_top(ctx)
            self._open(ctx, line.script_id, line.ts, callback=line.is_callback, explicit=True)
            ctx.current_script = line.script_id

        elif line.control is ControlKind.END:
            frame = ctx.frame
            if frame is None or frame.script_id != line.script_id:
                open_script = frame.script_id if frame else None
                logging.warning(f"Line {line.line_num}: end of script {line.script_id} in isolate {line.isolate} "
                                f"does not match the open execution (script {open_script}), ignoring")
                return False
            self.close_top(ctx)

        else:
            raise ValueError(f"Unhandled control kind {line.control!r} on line {line.line_num}")
        return True
