import logging
from contextvars import ContextVar, Token
from typing import Any, Optional

from autoheal.tracer.callback import TracerCallbackHandler
from autoheal.tracer.exporter import YAMLExporter
from autoheal.tracer.span import Span, SpanKind, _current_span, get_current_span, set_current_span

logger = logging.getLogger(__name__)

__all__ = ["Tracer", "get_active_tracer", "set_active_tracer"]

_active_tracer: ContextVar[Optional["Tracer"]] = ContextVar("active_tracer", default=None)


def get_active_tracer() -> Optional["Tracer"]:
    """The tracer most recently :pymethod:`Tracer.activate`-d in this context."""
    return _active_tracer.get()


def set_active_tracer(tracer: Optional["Tracer"]) -> Token:
    return _active_tracer.set(tracer)


class Tracer:
    """Hierarchical span-based tracer.

    Parameters
    ----------
    exporter:
        An exporter used to persist the trace tree when :pymethod:`export`
        is called.  May be ``None`` (trace data is kept only in memory).
    """

    def __init__(
        self,
        exporter: YAMLExporter | None = None,
    ) -> None:
        self._exporter = exporter
        self._callback_handler = TracerCallbackHandler()
        self._root_span: Optional[Span] = None

    # ------------------------------------------------------------------
    # Activation / deactivation
    # ------------------------------------------------------------------

    def activate(self) -> Token:
        """Push this tracer into the ``ContextVar`` so decorators find it."""
        return set_active_tracer(self)

    def deactivate(self, token: Token) -> None:
        """Restore the previous tracer (or ``None``) via *token*."""
        _active_tracer.reset(token)

    # ------------------------------------------------------------------
    # Span lifecycle
    # ------------------------------------------------------------------

    def start_span(
        self,
        kind: SpanKind,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> tuple[Span, Token]:
        """Create a new span and make it the *current* span.

        The new span is added as a child of the currently active span.  A
        span started without a parent becomes the root that
        :pymethod:`export` writes out.

        Returns ``(span, context_token)``; the token must be passed to
        :pymethod:`end_span` to restore the previous span.
        """
        span = Span(kind=kind, name=name)
        if attributes:
            span.attributes.update(attributes)

        parent = get_current_span()
        if parent is not None:
            parent.add_child(span)
        else:
            self._root_span = span

        token = set_current_span(span)
        return span, token

    def end_span(
        self,
        span: Span,
        token: Token,
        error: Exception | None = None,
    ) -> None:
        """Finish *span* and restore the previous span via *token*."""
        span.finish(error=error)
        _current_span.reset(token)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export(self) -> None:
        """Persist the root trace tree via the configured exporter."""
        if self._exporter is None:
            logger.debug("No exporter configured, skipping trace export.")
            return
        if self._root_span is None:
            logger.warning("No root span recorded, nothing to export.")
            return
        self._exporter.export(self._root_span)

    @property
    def callback_handler(self) -> TracerCallbackHandler:
        """The LangChain callback handler managed by this tracer."""
        return self._callback_handler

    @property
    def root_span(self) -> Optional[Span]:
        """The most recent span started without a parent."""
        return self._root_span
