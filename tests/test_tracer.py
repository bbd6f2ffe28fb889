"""Tests for the autoheal.tracer framework."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
import yaml

from autoheal.tracer.span import Span, SpanKind, _current_span, get_current_span, set_current_span
from autoheal.tracer.tracer import Tracer, _active_tracer, get_active_tracer, set_active_tracer
from autoheal.tracer.exporter import YAMLExporter
from autoheal.tracer.callback import TracerCallbackHandler, _serialize_messages
from autoheal.tracer.decorators import (
    trace_healing,
    trace_llm,
    trace_step,
    trace_task,
    trace_tool,
)


def _message(type_: str, content: str) -> MagicMock:
    msg = MagicMock()
    msg.type = type_
    msg.content = content
    return msg


# ---------------------------------------------------------------------------
# Span
# ---------------------------------------------------------------------------


class TestSpan:
    def test_create_span(self):
        span = Span(kind=SpanKind.TASK, name="task-1")
        assert span.kind == SpanKind.TASK
        assert span.status == "ok"
        assert span.children == []
        assert span.parent is None
        assert len(span.span_id) == 12

    def test_add_child(self):
        parent = Span(kind=SpanKind.TASK, name="task")
        child = Span(kind=SpanKind.STEP, name="step_1")
        parent.add_child(child)
        assert child.parent is parent
        assert child in parent.children

    def test_finish(self):
        span = Span(kind=SpanKind.TOOL_CALL, name="click")
        span.finish()
        assert span.duration_ms is not None
        assert span.duration_ms >= 0
        assert span.status == "ok"

        failed = Span(kind=SpanKind.TOOL_CALL, name="click")
        failed.finish(error=ValueError("boom"))
        assert failed.status == "error"
        assert failed.error == "boom"

    def test_to_dict(self):
        parent = Span(kind=SpanKind.TASK, name="t")
        child = Span(kind=SpanKind.STEP, name="step_1")
        child.set_attribute("attempts", 2)
        parent.add_child(child)
        child.finish()
        parent.finish()

        d = parent.to_dict()
        assert d["kind"] == "task"
        assert d["status"] == "ok"
        assert d["children"][0]["kind"] == "step"
        assert d["children"][0]["attributes"] == {"attempts": 2}
        assert "children" not in d["children"][0]


# ---------------------------------------------------------------------------
# Context vars
# ---------------------------------------------------------------------------


class TestContext:
    def test_default_none(self):
        assert get_current_span() is None
        assert get_active_tracer() is None

    def test_set_and_reset(self):
        span = Span(kind=SpanKind.STEP, name="step")
        span_token = set_current_span(span)
        tracer = Tracer()
        tracer_token = set_active_tracer(tracer)
        assert get_current_span() is span
        assert get_active_tracer() is tracer

        _active_tracer.reset(tracer_token)
        _current_span.reset(span_token)
        assert get_current_span() is None
        assert get_active_tracer() is None


# ---------------------------------------------------------------------------
# Tracer
# ---------------------------------------------------------------------------


class TestTracer:
    def test_activate_deactivate(self):
        tracer = Tracer()
        token = tracer.activate()
        assert get_active_tracer() is tracer
        tracer.deactivate(token)
        assert get_active_tracer() is None

    def test_start_end_span(self):
        tracer = Tracer()
        task, task_token = tracer.start_span(SpanKind.TASK, "task")
        assert tracer.root_span is task

        step, step_token = tracer.start_span(SpanKind.STEP, "step_1")
        assert get_current_span() is step
        assert step.parent is task
        assert tracer.root_span is task

        tracer.end_span(step, step_token, error=RuntimeError("fail"))
        assert get_current_span() is task
        assert step.status == "error"

        tracer.end_span(task, task_token)
        assert get_current_span() is None

    def test_export_without_exporter_is_noop(self):
        tracer = Tracer()
        span, token = tracer.start_span(SpanKind.TASK, "task")
        tracer.end_span(span, token)
        tracer.export()

    def test_callback_handler_property(self):
        tracer = Tracer()
        assert isinstance(tracer.callback_handler, TracerCallbackHandler)
        assert tracer.callback_handler is tracer.callback_handler


# ---------------------------------------------------------------------------
# YAMLExporter
# ---------------------------------------------------------------------------


class TestYAMLExporter:
    def test_export_creates_file(self, tmp_path: Path):
        exporter = YAMLExporter(output_dir=tmp_path / "traces")
        root = Span(kind=SpanKind.HEALING, name="heal_step_2")
        root.set_attribute("strategy", "Wait Longer")
        root.finish()

        path = exporter.export(root)
        assert path.parent == tmp_path / "traces"
        assert path.name.startswith("trace_healing_")
        assert path.suffix == ".yaml"

        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        assert data["name"] == "heal_step_2"
        assert data["attributes"]["strategy"] == "Wait Longer"


# ---------------------------------------------------------------------------
# TracerCallbackHandler
# ---------------------------------------------------------------------------


class TestTracerCallbackHandler:
    def test_serialize_messages(self):
        batches = [[_message("system", "rules"), _message("human", "why?")]]
        assert _serialize_messages(batches) == [
            {"role": "system", "content": "rules"},
            {"role": "human", "content": "why?"},
        ]

    @pytest.mark.asyncio
    async def test_request_and_response(self):
        handler = TracerCallbackHandler()
        span = Span(kind=SpanKind.LLM_CALL, name="diagnose")
        token = set_current_span(span)
        run_id = uuid4()

        await handler.on_chat_model_start(
            serialized={"id": ["langchain", "chat_models", "openai", "ChatOpenAI"],
                        "kwargs": {"model_name": "gpt-4o"}},
            messages=[[_message("human", "Hello")]],
            run_id=run_id,
        )
        gen = MagicMock()
        gen.text = "text"
        gen.message = MagicMock()
        gen.message.content = '{"strategy_type": "extended_wait"}'
        result = MagicMock()
        result.generations = [[gen]]
        result.llm_output = {"token_usage": {"prompt_tokens": 100, "completion_tokens": 50, "total_tokens": 150}}
        await handler.on_llm_end(response=result, run_id=run_id)

        assert span.attributes["model"] == "gpt-4o"
        assert span.attributes["request"]["messages"][0]["content"] == "Hello"
        assert span.attributes["response"]["content"] == '{"strategy_type": "extended_wait"}'
        assert span.attributes["token_usage"]["total_tokens"] == 150

        _current_span.reset(token)

    @pytest.mark.asyncio
    async def test_usage_metadata_fallback(self):
        handler = TracerCallbackHandler()
        span = Span(kind=SpanKind.LLM_CALL, name="diagnose")
        token = set_current_span(span)
        run_id = uuid4()

        await handler.on_chat_model_start(serialized={}, messages=[[_message("human", "hi")]], run_id=run_id)
        gen = MagicMock()
        gen.message = MagicMock()
        gen.message.content = "ok"
        gen.message.usage_metadata = {"input_tokens": 7, "output_tokens": 3, "total_tokens": 10}
        result = MagicMock()
        result.generations = [[gen]]
        result.llm_output = None
        await handler.on_llm_end(response=result, run_id=run_id)

        assert span.attributes["model"] == "unknown"
        assert span.attributes["token_usage"] == {"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10}

        _current_span.reset(token)

    @pytest.mark.asyncio
    async def test_on_llm_error_marks_span(self):
        handler = TracerCallbackHandler()
        span = Span(kind=SpanKind.LLM_CALL, name="diagnose")
        token = set_current_span(span)
        run_id = uuid4()

        await handler.on_chat_model_start(serialized={"id": ["ChatOpenAI"]},
                                          messages=[[_message("system", "prompt")]], run_id=run_id)
        await handler.on_llm_error(error=RuntimeError("API error"), run_id=run_id)

        assert span.status == "error"
        assert "API error" in span.error

        _current_span.reset(token)

    @pytest.mark.asyncio
    async def test_ignores_non_llm_call_span(self):
        handler = TracerCallbackHandler()
        span = Span(kind=SpanKind.HEALING, name="heal")
        token = set_current_span(span)

        await handler.on_chat_model_start(serialized={"id": ["ChatOpenAI"]},
                                          messages=[[_message("system", "prompt")]], run_id=uuid4())

        assert "request" not in span.attributes

        _current_span.reset(token)


# ---------------------------------------------------------------------------
# Decorators
# ---------------------------------------------------------------------------


class TestDecorators:
    @pytest.mark.asyncio
    async def test_no_tracer_passthrough(self):
        assert get_active_tracer() is None

        @trace_llm("test")
        async def my_func():
            return 42

        assert await my_func() == 42

    @pytest.mark.asyncio
    async def test_trace_llm_error(self):
        tracer = Tracer()
        token = tracer.activate()
        parent, parent_token = tracer.start_span(SpanKind.HEALING, "heal")

        @trace_llm("failing_call")
        async def failing():
            raise ValueError("fail!")

        with pytest.raises(ValueError, match="fail!"):
            await failing()

        assert parent.children[0].kind == SpanKind.LLM_CALL
        assert parent.children[0].status == "error"
        assert parent.children[0].error == "fail!"
        assert get_current_span() is parent

        tracer.end_span(parent, parent_token)
        tracer.deactivate(token)

    @pytest.mark.asyncio
    async def test_name_from_arguments(self):
        tracer = Tracer()
        token = tracer.activate()
        parent, parent_token = tracer.start_span(SpanKind.STEP, "step_1")

        @trace_tool(name_from=lambda args: args["tool_name"])
        async def execute(self, tool_name: str, parameters: dict):
            assert get_current_span().name == "click"

        @trace_tool(name_from=lambda args: args["missing"])
        async def unnamed(tool_name: str):
            pass

        await execute(None, tool_name="click", parameters={})
        await unnamed("hover")

        assert [c.name for c in parent.children] == ["click", "unnamed"]

        tracer.end_span(parent, parent_token)
        tracer.deactivate(token)

    @pytest.mark.asyncio
    async def test_trace_healing_root_auto_export(self, tmp_path: Path):
        tracer = Tracer(exporter=YAMLExporter(output_dir=tmp_path))
        token = tracer.activate()

        @trace_healing("heal_step_3")
        async def heal():
            assert get_current_span().kind == SpanKind.HEALING

        await heal()

        files = list(tmp_path.glob("trace_healing_*.yaml"))
        assert len(files) == 1

        tracer.deactivate(token)

    @pytest.mark.asyncio
    async def test_nested_hierarchy(self, tmp_path: Path):
        """Full hierarchy: task → step → tool and task → healing → llm."""
        tracer = Tracer(exporter=YAMLExporter(output_dir=tmp_path))
        token = tracer.activate()

        @trace_tool("click")
        async def tool_func():
            return "clicked"

        @trace_step("step_1")
        async def step_func():
            return await tool_func()

        @trace_llm("diagnose_step_failure")
        async def llm_func():
            return "{}"

        @trace_healing("heal_step_1")
        async def heal_func():
            return await llm_func()

        @trace_task("task-1")
        async def task_func():
            await step_func()
            return await heal_func()

        assert await task_func() == "{}"

        # Nested healing spans do not export on their own.
        files = list(tmp_path.glob("trace_*.yaml"))
        assert len(files) == 1
        with open(files[0], "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)

        assert data["kind"] == "task"
        step, healing = data["children"]
        assert step["kind"] == "step"
        assert step["children"][0]["kind"] == "tool_call"
        assert healing["kind"] == "healing"
        assert healing["children"][0]["name"] == "diagnose_step_failure"

        tracer.deactivate(token)
