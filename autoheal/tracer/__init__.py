from autoheal.tracer.decorators import (
    trace_healing,
    trace_llm,
    trace_step,
    trace_task,
    trace_tool,
)
from autoheal.tracer.exporter import YAMLExporter
from autoheal.tracer.span import get_current_span, set_current_span
from autoheal.tracer.tracer import get_active_tracer
from autoheal.tracer.span import Span, SpanKind
from autoheal.tracer.tracer import Tracer

__all__ = [
    "Tracer",
    "YAMLExporter",
    "Span",
    "SpanKind",
    "get_active_tracer",
    "get_current_span",
    "set_current_span",
    "trace_task",
    "trace_step",
    "trace_tool",
    "trace_healing",
    "trace_llm",
]
