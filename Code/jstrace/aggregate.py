"""
Creates trace nodes and links them into the Isolate -> Script -> Execution
-> Call hierarchy. All node IDs come from a single counter per run, so the
same isolate name or script ID seen in different places can never produce
ambiguous parent/child references.
"""

import itertools
import logging

from .lines import Line
from .model import Call, Execution, Isolate, Script, Trace


class Aggregator:

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.trace = Trace(id=self.next_id())

    def next_id(self) -> int:
        return next(self._ids)

    def ensure_isolate(self, name: str) -> Isolate:
        trace = self.trace
        node_id = trace.isolate_ids.get(name)
        if node_id is not None:
            return trace.isolates[node_id]

        isolate = Isolate(name=name, id=self.next_id(), parent=trace.id)
        trace.isolates[isolate.id] = isolate
        trace.isolate_ids[name] = isolate.id
        trace.children.append(isolate.id)
        logging.debug(f"New isolate {name} (id {isolate.id})")
        return isolate

    def ensure_script(self, isolate_name: str, script_id: str, base_url: str = "") -> Script:
        """Return the script for (isolate, script_id), creating both on first reference."""
        isolate = self.ensure_isolate(isolate_name)
        node_id = isolate.scripts.get(script_id)
        if node_id is not None:
            script = self.trace.scripts[node_id]
            if base_url and not script.base_url:
                script.base_url = base_url
            return script

        script = Script(isolate=isolate_name, script_id=script_id, base_url=base_url,
                        id=self.next_id(), parent=isolate.id)
        self.trace.scripts[script.id] = script
        isolate.scripts[script_id] = script.id
        isolate.children.append(script.id)
        logging.debug(f"New script {script_id} in isolate {isolate_name} (id {script.id})")
        return script

    def new_execution(self, isolate_name: str, script_id: str, ts: str = "", callback: bool = False) -> Execution:
        script = self.ensure_script(isolate_name, script_id)
        execution = Execution(isolate=isolate_name, script_id=script_id, ts=ts, callback=callback,
                              id=self.next_id(), parent=script.id)
        self.trace.executions[execution.id] = execution
        script.children.append(execution.id)
        return execution

    def new_call(self, line: Line) -> Call:
        """Create an unlinked call node; the call-stack tracker decides its parent."""
        call = Call(call_type=line.call_type, call_class=line.call_class, call_func=line.call_func,
                    id=self.next_id(), line_num=line.line_num)
        self.trace.calls[call.id] = call
        return call
