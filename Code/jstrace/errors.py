class JSTraceError(Exception):
    """Base class for errors raised by jstrace."""


class TraceFinalizedError(JSTraceError):
    """A line was ingested after the trace was finalized."""


class RecordFormatError(JSTraceError):
    """A flat record set could not be turned back into a trace."""
