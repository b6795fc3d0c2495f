import pytest


def rec(*fields, ts=None):
    """One pipe-format record, optionally behind a Chromium log header."""
    body = "JSTRACE|" + "|".join(fields)
    if ts is None:
        return body
    return f"[4242:4242:{ts}:INFO:console.cc(42)] {body}"


@pytest.fixture
def canvas_lines():
    return [
        rec("I1", "call", "method", "HTMLCanvasElement", "getContext"),
        rec("I1", "arg", "string", "2d"),
        rec("I1", "call", "method", "CanvasRenderingContext2D", "fillText"),
        rec("I1", "arg", "string", "hi"),
        rec("I1", "ret", "undefined", ""),
        rec("I1", "ret", "object", "[Context]"),
    ]
