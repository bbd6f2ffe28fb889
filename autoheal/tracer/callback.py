import logging
from typing import Any, Optional
from uuid import UUID

from langchain_core.callbacks import AsyncCallbackHandler
from langchain_core.messages import BaseMessage
from langchain_core.outputs import LLMResult

from autoheal.tracer.span import Span, SpanKind, get_current_span

logger = logging.getLogger(__name__)


def _serialize_messages(messages: list[list[BaseMessage]]) -> list[dict[str, str]]:
    """Flatten LangChain message batches into ``role`` / ``content`` dicts."""
    return [
        {"role": msg.type, "content": str(msg.content)}
        for batch in messages
        for msg in batch
    ]


def _token_usage(response: LLMResult, message: Any) -> dict[str, Any]:
    """Read token usage from ``llm_output`` or, failing that, the message."""
    usage = (response.llm_output or {}).get("token_usage") or {}
    if usage:
        return {
            "prompt_tokens": usage.get("prompt_tokens"),
            "completion_tokens": usage.get("completion_tokens"),
            "total_tokens": usage.get("total_tokens"),
        }
    metadata = getattr(message, "usage_metadata", None)
    if not metadata:
        return {}
    return {
        "prompt_tokens": metadata.get("input_tokens"),
        "completion_tokens": metadata.get("output_tokens"),
        "total_tokens": metadata.get("total_tokens"),
    }


class TracerCallbackHandler(AsyncCallbackHandler):
    """Attaches diagnostic LLM requests and responses to the active span.

    Start and end callbacks are correlated through the LangChain *run_id*.
    Events fired outside an ``LLM_CALL`` span are ignored.
    """

    def __init__(self) -> None:
        super().__init__()
        self._run_spans: dict[UUID, Span] = {}

    async def on_chat_model_start(
        self,
        serialized: dict[str, Any],
        messages: list[list[BaseMessage]],
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        span = get_current_span()
        if span is None or span.kind != SpanKind.LLM_CALL:
            return

        self._run_spans[run_id] = span
        serialized = serialized or {}
        model_name = (serialized.get("kwargs") or {}).get("model_name") or (serialized.get("id") or ["unknown"])[-1]
        span.set_attribute("model", model_name)
        span.set_attribute("request", {"messages": _serialize_messages(messages)})

    async def on_llm_end(
        self,
        response: LLMResult,
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        **kwargs: Any,
    ) -> None:
        span = self._run_spans.pop(run_id, None)
        if span is None:
            return

        content = ""
        message = None
        if response.generations and response.generations[0]:
            generation = response.generations[0][0]
            content = generation.text or ""
            message = getattr(generation, "message", None)
            if message is not None:
                content = str(message.content)

        span.set_attribute("response", {"content": content})
        usage = _token_usage(response, message)
        if usage:
            span.set_attribute("token_usage", usage)

    async def on_llm_error(
        self,
        error: BaseException,
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        **kwargs: Any,
    ) -> None:
        span = self._run_spans.pop(run_id, None)
        if span is None:
            return
        logger.debug("Diagnostic LLM call failed: %s", error)
        span.status = "error"
        span.error = str(error)
