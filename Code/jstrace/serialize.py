"""
Turning a Trace into plain JSON-ready structures and back.

to_records() flattens the tree into one record per node carrying
{id, kind, parent, children}, which is all a storage layer needs to rebuild
the hierarchy. to_dict() is the nested, human-readable view.
"""

from typing import Any, Dict, Iterable, List, Optional

from .errors import RecordFormatError
from .model import Arg, Call, Execution, Isolate, OpenWPMResults, Script, Trace


def _arg_to_dict(arg: Optional[Arg]) -> Optional[Dict[str, str]]:
    if arg is None:
        return None
    return {"type": arg.type, "val": arg.value}


def _arg_from_dict(data: Optional[Dict[str, Any]]) -> Optional[Arg]:
    if data is None:
        return None
    return Arg(str(data["type"]), str(data["val"]))


def _openwpm_to_dict(results: Optional[OpenWPMResults]) -> Optional[Dict[str, bool]]:
    if results is None:
        return None
    return {
        "canvas": results.canvas,
        "canvas_font": results.canvas_font,
        "web_rtc": results.web_rtc,
        "audio": results.audio,
        "battery": results.battery,
    }


# ---------------------------------------------------------------------------
# Flat records
# ---------------------------------------------------------------------------

def to_records(trace: Trace) -> List[Dict[str, Any]]:
    records: List[Dict[str, Any]] = [{
        "id": trace.id,
        "kind": "trace",
        "parent": 0,
        "children": list(trace.children),
        "stored_calls": trace.stored_calls,
        "ignored_calls": trace.ignored_calls,
        "ignored_by_kind": dict(trace.ignored_by_kind),
        "finalized": trace.finalized,
    }]
    for isolate in trace.isolates.values():
        records.append({
            "id": isolate.id,
            "kind": "isolate",
            "parent": isolate.parent,
            "children": list(isolate.children),
            "name": isolate.name,
        })
    for script in trace.scripts.values():
        records.append({
            "id": script.id,
            "kind": "script",
            "parent": script.parent,
            "children": list(script.children),
            "isolate": script.isolate,
            "script_id": script.script_id,
            "base_url": script.base_url,
            "openwpm_results": _openwpm_to_dict(script.openwpm),
        })
    for execution in trace.executions.values():
        records.append({
            "id": execution.id,
            "kind": "execution",
            "parent": execution.parent,
            "children": list(execution.children),
            "isolate": execution.isolate,
            "script_id": execution.script_id,
            "timestamp": execution.ts,
            "end_timestamp": execution.end_ts,
            "callback": execution.callback,
            "closed": execution.closed,
        })
    for call in trace.calls.values():
        records.append({
            "id": call.id,
            "kind": "call",
            "parent": call.parent,
            "children": list(call.children),
            "execution": call.execution,
            "type": call.call_type,
            "class": call.call_class,
            "func": call.call_func,
            "args": [_arg_to_dict(a) for a in call.args],
            "ret": _arg_to_dict(call.ret),
            "line_num": call.line_num,
            "closed": call.closed,
        })
    return records


def _check_children(children: List[int], arena: Dict[int, Any], kind: str, node_id: int) -> None:
    for child in children:
        if child not in arena:
            raise RecordFormatError(f"{kind} {node_id} references unknown child {child}")


def from_records(records: Iterable[Dict[str, Any]]) -> Trace:
    """
    Rebuild a Trace from the output of to_records().

    Raises:
        RecordFormatError: on unknown kinds, duplicate IDs, a missing trace
            record, or children that reference nodes of the wrong kind.
    """
    header: Optional[Dict[str, Any]] = None
    calls: Dict[int, Call] = {}
    executions: Dict[int, Execution] = {}
    scripts: Dict[int, Script] = {}
    isolates: Dict[int, Isolate] = {}
    seen = set()

    try:
        for rec in records:
            node_id = int(rec["id"])
            if node_id in seen:
                raise RecordFormatError(f"Duplicate node id {node_id}")
            seen.add(node_id)
            kind = rec["kind"]
            parent, children = int(rec["parent"]), [int(c) for c in rec["children"]]

            if kind == "trace":
                header = rec
            elif kind == "isolate":
                isolates[node_id] = Isolate(name=rec["name"], id=node_id, parent=parent, children=children)
            elif kind == "script":
                openwpm = rec.get("openwpm_results")
                scripts[node_id] = Script(isolate=rec["isolate"], script_id=rec["script_id"],
                                          base_url=rec.get("base_url", ""),
                                          openwpm=OpenWPMResults(**openwpm) if openwpm is not None else None,
                                          id=node_id, parent=parent, children=children)
            elif kind == "execution":
                executions[node_id] = Execution(isolate=rec["isolate"], script_id=rec["script_id"],
                                                ts=rec.get("timestamp", ""), end_ts=rec.get("end_timestamp", ""),
                                                callback=bool(rec.get("callback", False)),
                                                id=node_id, parent=parent, children=children,
                                                closed=bool(rec.get("closed", False)))
            elif kind == "call":
                calls[node_id] = Call(call_type=rec["type"], call_class=rec["class"], call_func=rec["func"],
                                      args=[_arg_from_dict(a) for a in rec.get("args", [])],
                                      ret=_arg_from_dict(rec.get("ret")),
                                      id=node_id, parent=parent, children=children,
                                      execution=int(rec.get("execution", 0)),
                                      line_num=int(rec.get("line_num", 0)),
                                      closed=bool(rec.get("closed", False)))
            else:
                raise RecordFormatError(f"Unknown record kind '{kind}' for node {node_id}")

        if header is None:
            raise RecordFormatError("No trace record found")
        trace = Trace(id=int(header["id"]), children=[int(c) for c in header["children"]],
                      calls=calls, executions=executions, scripts=scripts, isolates=isolates,
                      stored_calls=int(header["stored_calls"]), ignored_calls=int(header["ignored_calls"]),
                      ignored_by_kind=dict(header.get("ignored_by_kind") or {}),
                      finalized=bool(header.get("finalized", False)))
    except (KeyError, TypeError, ValueError) as e:
        raise RecordFormatError(f"Invalid record: {e}") from e

    _check_children(trace.children, isolates, "trace", trace.id)
    for isolate in isolates.values():
        _check_children(isolate.children, scripts, "isolate", isolate.id)
        for script_node in isolate.children:
            isolate.scripts[scripts[script_node].script_id] = script_node
        trace.isolate_ids[isolate.name] = isolate.id
    for script in scripts.values():
        _check_children(script.children, executions, "script", script.id)
    for execution in executions.values():
        _check_children(execution.children, calls, "execution", execution.id)
    for call in calls.values():
        _check_children(call.children, calls, "call", call.id)
    return trace


# ---------------------------------------------------------------------------
# Nested view
# ---------------------------------------------------------------------------

def _call_to_dict(call: Call) -> Dict[str, Any]:
    return {
        "type": call.call_type,
        "class": call.call_class,
        "func": call.call_func,
        "args": [_arg_to_dict(a) for a in call.args],
        "ret": _arg_to_dict(call.ret),
        "calls": [],
    }


def execution_to_dict(trace: Trace, execution: Execution) -> Dict[str, Any]:
    # built without recursion, call nesting depth is unbounded
    nodes = {call.id: _call_to_dict(call) for call in trace.walk_calls(execution)}
    for call_id, node in nodes.items():
        node["calls"] = [nodes[c] for c in trace.calls[call_id].children]
    return {
        "isolate": execution.isolate,
        "script_id": execution.script_id,
        "timestamp": execution.ts,
        "end_timestamp": execution.end_ts,
        "callback": execution.callback,
        "calls": [nodes[c] for c in execution.children],
    }


def to_dict(trace: Trace) -> Dict[str, Any]:
    isolates: Dict[str, Any] = {}
    for isolate in (trace.isolates[i] for i in trace.children):
        scripts: Dict[str, Any] = {}
        for script in trace.scripts_of(isolate):
            entry: Dict[str, Any] = {
                "script_id": script.script_id,
                "base_url": script.base_url,
                "executions": [execution_to_dict(trace, e) for e in trace.executions_of(script)],
            }
            if script.openwpm is not None:
                entry["openwpm_results"] = _openwpm_to_dict(script.openwpm)
            scripts[script.script_id] = entry
        isolates[isolate.name] = {"scripts": scripts}
    return {
        "isolates": isolates,
        "ignored_calls": trace.ignored_calls,
        "stored_calls": trace.stored_calls,
    }
