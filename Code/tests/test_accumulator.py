import threading

import pytest

from jstrace import OpenWPMResults, TraceAccumulator, TraceFinalizedError, reconstruct, to_records
from jstrace.executions import UNATTRIBUTED_SCRIPT_ID
from jstrace.lines import ControlKind, Line, LineType, classify_line

from conftest import rec


def only_execution(trace, isolate="I1", script_id=UNATTRIBUTED_SCRIPT_ID):
    executions = trace.executions_of(trace.script(isolate, script_id))
    assert len(executions) == 1
    return executions[0]


def test_canvas_scenario(canvas_lines):
    trace = reconstruct(canvas_lines)

    assert trace.stored_calls == 2
    assert trace.ignored_calls == 0

    execution = only_execution(trace)
    [get_context] = trace.calls_of(execution)
    assert get_context.call_func == "getContext"
    assert [(a.type, a.value) for a in get_context.args] == [("string", "2d")]
    assert get_context.ret.type == "object"
    assert get_context.ret.value == "[Context]"
    assert get_context.parent == 0
    assert get_context.closed

    [fill_text] = trace.children_of(get_context)
    assert fill_text.call_func == "fillText"
    assert fill_text.parent == get_context.id
    assert fill_text.execution == execution.id
    assert [(a.type, a.value) for a in fill_text.args] == [("string", "hi")]
    assert fill_text.ret.type == "undefined"
    assert fill_text.children == []


def test_ret_with_empty_stack_is_ignored():
    trace = reconstruct([rec("I2", "ret", "undefined", "")])
    assert trace.ignored_calls == 1
    assert trace.ignored_by_kind == {"ret": 1}
    assert trace.stored_calls == 0
    assert trace.calls == {}


def test_orphan_arg_does_not_corrupt_isolate():
    trace = reconstruct([
        rec("I1", "arg", "number", "1"),
        rec("I1", "call", "getter", "Navigator", "userAgent"),
        rec("I1", "ret", "string", "Mozilla/5.0"),
        rec("I1", "ret", "string", "stray"),
        rec("I1", "call", "method", "Date", "now"),
        rec("I1", "ret", "number", "1700000000000"),
    ])
    assert trace.ignored_by_kind == {"arg": 1, "ret": 1}
    assert trace.stored_calls == 2
    calls = trace.calls_of(only_execution(trace))
    assert [c.call_func for c in calls] == ["userAgent", "now"]
    assert calls[0].args == []
    assert calls[0].ret.value == "Mozilla/5.0"


def test_deep_recursion_nests_lifo():
    depth = 50
    lines = [rec("I1", "call", "function", "", "fib") for _ in range(depth)]
    lines += [rec("I1", "ret", "number", str(i)) for i in range(depth)]
    trace = reconstruct(lines)

    execution = only_execution(trace)
    assert len(execution.children) == 1
    chain = list(trace.walk_calls(execution))
    assert len(chain) == depth
    for outer, inner in zip(chain, chain[1:]):
        assert outer.children == [inner.id]
        assert inner.parent == outer.id
    # innermost call returned first
    assert chain[-1].ret.value == "0"
    assert chain[0].ret.value == str(depth - 1)


def test_siblings_keep_call_order():
    trace = reconstruct([
        rec("I1", "call", "method", "Document", "createElement"),
        rec("I1", "call", "method", "A", "first"),
        rec("I1", "ret", "undefined", ""),
        rec("I1", "call", "method", "A", "second"),
        rec("I1", "ret", "undefined", ""),
        rec("I1", "call", "method", "A", "third"),
        rec("I1", "ret", "undefined", ""),
        rec("I1", "ret", "object", "[HTMLCanvasElement]"),
    ])
    [root] = trace.calls_of(only_execution(trace))
    assert [c.call_func for c in trace.children_of(root)] == ["first", "second", "third"]


def test_interleaved_isolates_do_not_share_stacks():
    trace = reconstruct([
        rec("I1", "call", "method", "Canvas", "toDataURL"),
        rec("I2", "call", "method", "AudioContext", "createOscillator"),
        rec("I1", "arg", "string", "image/png"),
        rec("I2", "ret", "object", "[OscillatorNode]"),
        rec("I1", "ret", "string", "data:image/png;base64,AAA"),
    ])
    [to_data_url] = trace.calls_of(only_execution(trace, "I1"))
    [oscillator] = trace.calls_of(only_execution(trace, "I2"))
    assert to_data_url.args[0].value == "image/png"
    assert to_data_url.children == []
    assert oscillator.args == []
    assert oscillator.ret.value == "[OscillatorNode]"


def test_same_script_id_in_two_isolates_are_different_scripts():
    trace = reconstruct([
        rec("I1", "script", "7", "https://a.example/one.js"),
        rec("I2", "script", "7", "https://b.example/two.js"),
        rec("I1", "call", "method", "A", "a"),
        rec("I2", "call", "method", "B", "b"),
    ])
    one, two = trace.script("I1", "7"), trace.script("I2", "7")
    assert one.id != two.id
    assert one.base_url == "https://a.example/one.js"
    assert two.base_url == "https://b.example/two.js"
    assert one.parent == trace.isolate("I1").id
    assert two.parent == trace.isolate("I2").id


def test_callback_begin_forms_second_execution():
    trace = reconstruct([
        rec("I1", "script", "7", "https://example.com/fp.js", ts="1019/101500.000001"),
        rec("I1", "call", "method", "Window", "addEventListener", ts="1019/101500.000002"),
        rec("I1", "ret", "undefined", "", ts="1019/101500.000003"),
        rec("I1", "end", "7", ts="1019/101500.000004"),
        rec("I1", "begin", "7", "callback", ts="1019/101501.000000"),
        rec("I1", "call", "method", "OfflineAudioContext", "startRendering", ts="1019/101501.000001"),
        rec("I1", "ret", "object", "[Promise]", ts="1019/101501.000002"),
        rec("I1", "end", "7", "callback", ts="1019/101501.000003"),
    ])
    script = trace.script("I1", "7")
    first, second = trace.executions_of(script)
    assert [c.call_func for c in trace.calls_of(first)] == ["addEventListener"]
    assert [c.call_func for c in trace.calls_of(second)] == ["startRendering"]
    assert not first.callback
    assert second.callback
    assert first.ts == "1019/101500.000002"
    assert first.end_ts == "1019/101500.000004"
    assert second.ts == "1019/101501.000000"
    assert second.end_ts == "1019/101501.000003"
    assert first.parent == second.parent == script.id
    assert script.children == [first.id, second.id]


def test_begin_closes_finished_implicit_execution():
    trace = reconstruct([
        rec("I1", "script", "7"),
        rec("I1", "call", "method", "A", "load"),
        rec("I1", "ret", "undefined", ""),
        rec("I1", "begin", "7", "callback"),
        rec("I1", "call", "method", "A", "tick"),
        rec("I1", "ret", "undefined", ""),
    ])
    first, second = trace.executions_of(trace.script("I1", "7"))
    assert [c.call_func for c in trace.calls_of(first)] == ["load"]
    assert [c.call_func for c in trace.calls_of(second)] == ["tick"]


def test_synchronous_reentry_resumes_outer_execution():
    trace = reconstruct([
        rec("I1", "script", "1"),
        rec("I1", "call", "method", "Array", "forEach"),
        rec("I1", "begin", "2", "callback"),
        rec("I1", "call", "method", "Canvas", "getContext"),
        rec("I1", "ret", "object", "[Context]"),
        rec("I1", "end", "2", "callback"),
        rec("I1", "call", "method", "Math", "random"),
        rec("I1", "ret", "number", "0.5"),
        rec("I1", "ret", "undefined", ""),
    ])
    [outer] = trace.executions_of(trace.script("I1", "1"))
    [inner] = trace.executions_of(trace.script("I1", "2"))
    [for_each] = trace.calls_of(outer)
    assert [c.call_func for c in trace.children_of(for_each)] == ["random"]
    [get_context] = trace.calls_of(inner)
    assert get_context.parent == 0
    assert for_each.ret.type == "undefined"


def test_script_switch_closes_implicit_execution():
    trace = reconstruct([
        rec("I1", "script", "1"),
        rec("I1", "call", "method", "A", "a"),
        rec("I1", "ret", "undefined", ""),
        rec("I1", "script", "2"),
        rec("I1", "call", "method", "B", "b"),
        rec("I1", "ret", "undefined", ""),
    ])
    [first] = trace.executions_of(trace.script("I1", "1"))
    [second] = trace.executions_of(trace.script("I1", "2"))
    assert first.closed
    assert [c.call_func for c in trace.calls_of(second)] == ["b"]


def test_script_switch_closes_explicit_execution():
    trace = reconstruct([
        rec("I1", "begin", "5", "callback"),
        rec("I1", "call", "method", "A", "a"),
        rec("I1", "ret", "undefined", ""),
        rec("I1", "script", "6"),
        rec("I1", "call", "method", "B", "b"),
        rec("I1", "ret", "undefined", ""),
    ])
    [callback] = trace.executions_of(trace.script("I1", "5"))
    [initial] = trace.executions_of(trace.script("I1", "6"))
    assert callback.closed
    assert [c.call_func for c in trace.calls_of(callback)] == ["a"]
    assert [c.call_func for c in trace.calls_of(initial)] == ["b"]


def test_script_compiled_during_open_call_keeps_execution():
    trace = reconstruct([
        rec("I1", "script", "1"),
        rec("I1", "call", "function", "window", "eval"),
        rec("I1", "script", "2"),
        rec("I1", "call", "method", "B", "b"),
        rec("I1", "ret", "undefined", ""),
        rec("I1", "ret", "undefined", ""),
    ])
    [execution] = trace.executions_of(trace.script("I1", "1"))
    [eval_call] = trace.calls_of(execution)
    assert [c.call_func for c in trace.children_of(eval_call)] == ["b"]
    assert trace.executions_of(trace.script("I1", "2")) == []


def test_first_base_url_wins():
    trace = reconstruct([
        rec("I1", "script", "3"),
        rec("I1", "script", "3", "https://first.example/x.js"),
        rec("I1", "script", "3", "https://second.example/x.js"),
    ])
    assert trace.script("I1", "3").base_url == "https://first.example/x.js"


def test_mismatched_end_is_ignored():
    trace = reconstruct([
        rec("I1", "begin", "5", "callback"),
        rec("I1", "end", "6"),
        rec("I1", "call", "method", "A", "a"),
        rec("I1", "ret", "undefined", ""),
        rec("I1", "end", "5"),
    ])
    [execution] = trace.executions_of(trace.script("I1", "5"))
    assert [c.call_func for c in trace.calls_of(execution)] == ["a"]
    assert trace.ignored_calls == 1
    assert trace.ignored_by_kind == {"end": 1}


def test_unmatched_ends_are_counted():
    trace = reconstruct([
        rec("I1", "begin", "5", "callback"),
        rec("I1", "end", "6"),
        rec("I1", "end", "5"),
        rec("I1", "end", "5"),
    ])
    assert trace.ignored_calls == 2
    assert trace.ignored_by_kind == {"end": 2}
    assert trace.stored_calls == 0


def test_open_calls_are_closed_and_stored_at_finalize():
    trace = reconstruct([
        rec("I1", "call", "method", "RTCPeerConnection", "createOffer", ts="1019/101500.000001"),
        rec("I1", "call", "method", "RTCPeerConnection", "createDataChannel", ts="1019/101500.000002"),
        rec("I1", "arg", "string", "chan", ts="1019/101500.000003"),
    ])
    assert trace.stored_calls == 2
    execution = only_execution(trace)
    assert execution.closed
    assert execution.end_ts == "1019/101500.000003"
    calls = list(trace.walk_calls(execution))
    assert all(c.closed and c.ret is None for c in calls)
    assert calls[1].args[0].value == "chan"


def test_stored_plus_ignored_calls_matches_call_records():
    lines = [
        rec("I1", "call", "method", "A", "a"),
        rec("I1", "call", "method", "A"),
        rec("I1", "arg", "string", "x"),
        rec("I1", "ret", "undefined", ""),
        rec("I1", "ret", "undefined", ""),
        rec("", "call", "method", "A", "b"),
        rec("I1", "call", "method", "A", "c"),
        "garbage",
        rec("I1", "wat"),
    ]
    trace = reconstruct(lines)
    assert trace.stored_calls == 2
    assert trace.ignored_by_kind["call"] == 2
    assert trace.stored_calls + trace.ignored_by_kind["call"] == 4
    assert trace.ignored_by_kind == {"call": 2, "ret": 1, "unknown": 1}
    assert trace.ignored_calls == 4


def test_ids_are_unique_and_parents_consistent(canvas_lines):
    trace = reconstruct([rec("I1", "script", "1"), *canvas_lines, rec("I2", "script", "1"), *[
        line.replace("|I1|", "|I2|") for line in canvas_lines]])
    ids = [trace.id, *trace.isolates, *trace.scripts, *trace.executions, *trace.calls]
    assert len(ids) == len(set(ids))
    assert 0 not in ids
    for call in trace.calls.values():
        if call.parent:
            assert call.id in trace.calls[call.parent].children
        else:
            assert call.id in trace.executions[call.execution].children
    for execution in trace.executions.values():
        assert execution.id in trace.scripts[execution.parent].children
    for script in trace.scripts.values():
        assert trace.isolates[script.parent].scripts[script.script_id] == script.id


def test_finalize_is_idempotent(canvas_lines):
    acc = TraceAccumulator()
    acc.ingest_all(canvas_lines[:3])
    first = acc.finalize()
    snapshot = to_records(first)
    second = acc.finalize()
    assert second is first
    assert to_records(second) == snapshot


def test_ingest_after_finalize_raises(canvas_lines):
    acc = TraceAccumulator()
    acc.ingest_all(canvas_lines)
    acc.finalize()
    with pytest.raises(TraceFinalizedError):
        acc.ingest(canvas_lines[0])


def test_every_line_type_is_handled():
    acc = TraceAccumulator()
    for lt in LineType:
        acc.ingest_line(Line(lt, line_num=1, isolate="I1", kind="call", call_type="t", call_func="f",
                             control=ControlKind.ISOLATE,
                             arg_type="t", arg_val="v"))
    trace = acc.finalize()
    assert trace.stored_calls == 1


def test_ingest_numbers_lines():
    acc = TraceAccumulator()
    acc.ingest("banner")
    line = acc.ingest(rec("I1", "call", "method", "A", "a"))
    assert line.line_num == 2
    trace = acc.finalize()
    assert next(iter(trace.calls.values())).line_num == 2


def test_threads_sharing_line_numbers():
    acc = TraceAccumulator()

    def feed(isolate):
        for i in range(200):
            acc.ingest(rec(isolate, "call", "method", "A", f"f{i}"))
            acc.ingest(rec(isolate, "ret", "undefined", ""))

    workers = [threading.Thread(target=feed, args=(f"I{n}",)) for n in range(4)]
    for w in workers:
        w.start()
    for w in workers:
        w.join()
    trace = acc.finalize()
    assert trace.stored_calls == 800
    call_lines = sorted(c.line_num for c in trace.calls.values())
    assert len(set(call_lines)) == 800
    assert call_lines[-1] <= 1600


def test_threads_feeding_separate_isolates():
    acc = TraceAccumulator()

    def feed(isolate):
        for i in range(200):
            acc.ingest_line(classify_line(rec(isolate, "call", "method", "A", f"f{i}"), i))
            acc.ingest_line(classify_line(rec(isolate, "ret", "undefined", ""), i))

    workers = [threading.Thread(target=feed, args=(f"I{n}",)) for n in range(4)]
    for w in workers:
        w.start()
    for w in workers:
        w.join()
    trace = acc.finalize()
    assert trace.stored_calls == 800
    assert trace.ignored_calls == 0
    assert len(set(trace.calls)) == 800
    for n in range(4):
        assert len(only_execution(trace, f"I{n}").children) == 200


def test_annotate_script_leaves_executions_alone(canvas_lines):
    acc = TraceAccumulator().ingest_all([rec("I1", "script", "9", "https://x.example/fp.js"), *canvas_lines])
    trace = acc.finalize()
    before = list(trace.script("I1", "9").children)
    script = acc.annotate_script("I1", "9", OpenWPMResults(canvas=True))
    assert script.openwpm.canvas
    assert not script.openwpm.audio
    assert script.children == before
    with pytest.raises(KeyError):
        trace.annotate_script("I1", "404", OpenWPMResults())
