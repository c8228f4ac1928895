"""Optional OpenTelemetry instrumentation for tributary.

Call ``tributary.instrument()`` once at startup to enable tracing.
Requires ``opentelemetry-api`` to be installed; the library
works identically without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "tributary") -> None:
    """Enable OpenTelemetry tracing for all tributary operations.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install tributary[otel]``

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        import tributary
        tributary.instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install tributary[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured, spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("Tributary instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing.

    Subsequent operations will not emit spans.
    """
    global _tracer
    _tracer = None


def _chat_attributes(system: str, model: str | None, stream: bool) -> dict:
    return {
        "gen_ai.operation.name": "chat",
        "gen_ai.provider.name": system,
        "gen_ai.request.model": model or "unknown",
        "tributary.stream": stream,
    }


@asynccontextmanager
async def generation_span(system: str, model: str | None):
    """Wrap a one-shot ``generate_text`` call in a ``chat`` span."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"chat {model or 'unknown'}",
        kind=SpanKind.CLIENT,
        attributes=_chat_attributes(system, model, False),
    ) as span:
        yield span


def start_stream_span(system: str, model: str | None):
    """Start a ``chat`` span for a streaming session.

    The span is not made current; the stream aggregator ends it when the
    session reaches a terminal state.
    """
    if _tracer is None:
        return None
    from opentelemetry.trace import SpanKind

    return _tracer.start_span(
        f"chat {model or 'unknown'}",
        kind=SpanKind.CLIENT,
        attributes=_chat_attributes(system, model, True),
    )


def end_span(span) -> None:
    if span is None:
        return
    span.end()


def record_usage(span, usage, response_model: str | None = None) -> None:
    """Set token-usage and response-model attributes on a span.

    *usage* is a :class:`~tributary.completion.Usage`, reported or
    estimated.
    """
    if span is None or usage is None:
        return
    span.set_attribute("gen_ai.usage.input_tokens", usage.prompt_tokens)
    span.set_attribute("gen_ai.usage.output_tokens", usage.completion_tokens)
    if response_model:
        span.set_attribute(
            "gen_ai.response.model", response_model
        )


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    Sets ``error.type`` per GenAI semantic conventions.
    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute(
        "error.type", type(exception).__qualname__
    )
