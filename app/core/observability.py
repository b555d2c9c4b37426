import uuid
from contextlib import contextmanager
from contextvars import ContextVar


_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> str | None:
    """Return the current correlation id if present."""

    return _correlation_id.get()


@contextmanager
def correlation_context(correlation_id: str | None = None, *, prefix: str | None = None):
    """Set a correlation id for the duration of the block.

    An id already bound to the current context is reused so that a send
    triggered inside an HTTP request keeps the request's id.
    """

    current = _correlation_id.get()
    token = _correlation_id.set(correlation_id or current or f"{prefix or 'sms'}-{uuid.uuid4().hex[:12]}")
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(token)
