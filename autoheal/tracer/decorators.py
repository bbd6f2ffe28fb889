"""Tracer decorators for the span levels of a plan run.

Each decorator creates a span of the appropriate :class:`SpanKind`, pushes
it as the *current* span for the duration of the decorated ``async`` call,
and pops it on exit.  If no tracer has been :pymethod:`activate`-d the
decorated function runs untraced.

Usage::

    @trace_task(name_from=lambda args: args["plan"].task_id)
    async def execute_plan(self, plan, context, cancellation=None):
        ...

    @trace_tool(name_from=lambda args: args["request"].tool_name)
    async def invoke(self, request, cancellation=None):
        ...

    @trace_llm("diagnose_step_failure")
    async def advise(self, request):
        ...
"""

from __future__ import annotations

import functools
import inspect
import logging
from typing import Any, Callable, TypeVar

from autoheal.tracer.tracer import get_active_tracer
from autoheal.tracer.span import SpanKind

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])
NameFrom = Callable[[dict[str, Any]], Any]


def _resolve_name(fn: Callable[..., Any], default: str, name_from: NameFrom | None,
                  args: tuple[Any, ...], kwargs: dict[str, Any]) -> str:
    if name_from is None:
        return default
    try:
        bound = inspect.signature(fn).bind_partial(*args, **kwargs)
        resolved = name_from(bound.arguments)
    except (TypeError, KeyError, AttributeError) as exc:
        logger.debug("Could not derive span name for %s: %s", fn.__name__, exc)
        return default
    return str(resolved) if resolved else default


def _make_decorator(
    kind: SpanKind,
    name: str | None = None,
    *,
    auto_export: bool = False,
    name_from: NameFrom | None = None,
) -> Callable[[F], F]:
    """Build a decorator that wraps an *async* function in a span.

    Parameters
    ----------
    kind:
        The semantic span level.
    name:
        Fixed label for the span.  If ``None`` the function name is used.
    auto_export:
        If ``True`` the tracer's ``export()`` method is called after the
        span finishes, but only when the span is the root of the tree.
    name_from:
        Callable receiving the bound arguments of the call and returning the
        span name, e.g. ``lambda args: args["request"].tool_name``.
    """

    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            tracer = get_active_tracer()
            if tracer is None:
                return await fn(*args, **kwargs)

            span_name = _resolve_name(fn, name or fn.__name__, name_from, args, kwargs)
            span, token = tracer.start_span(kind, span_name)
            try:
                return await fn(*args, **kwargs)
            except BaseException as exc:
                span.status = "error"
                span.error = str(exc) or type(exc).__name__
                raise
            finally:
                tracer.end_span(span, token)
                if auto_export and span.parent is None:
                    tracer.export()

        return wrapper  # type: ignore[return-value]

    return decorator


def trace_task(name: str | None = None, *, name_from: NameFrom | None = None) -> Callable[[F], F]:
    """Mark an async function as a **task**-level span.

    The task span is the root of a plan run.  When it ends the tracer
    exports the collected data.
    """
    return _make_decorator(SpanKind.TASK, name, auto_export=True, name_from=name_from)


def trace_step(name: str | None = None, *, name_from: NameFrom | None = None) -> Callable[[F], F]:
    """Mark an async function as a **step**-level span."""
    return _make_decorator(SpanKind.STEP, name, name_from=name_from)


def trace_tool(name: str | None = None, *, name_from: NameFrom | None = None) -> Callable[[F], F]:
    """Mark an async function as a **tool-call**-level span."""
    return _make_decorator(SpanKind.TOOL_CALL, name, name_from=name_from)


def trace_healing(name: str | None = None, *, name_from: NameFrom | None = None) -> Callable[[F], F]:
    """Mark an async function as a **healing**-level span.

    Exported on exit when the healing span is the root of the tree.
    """
    return _make_decorator(SpanKind.HEALING, name, auto_export=True, name_from=name_from)


def trace_llm(name: str) -> Callable[[F], F]:
    """Mark an async function as an **LLM-call**-level span.

    The :class:`~autoheal.tracer.callback.TracerCallbackHandler` attaches
    LLM request/response data to this span when the underlying
    ``ainvoke`` call fires LangChain callbacks.
    """
    return _make_decorator(SpanKind.LLM_CALL, name)
