"""Tests for telemetry setup and the side-channel span decorator."""

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from ralph import telemetry
from ralph.config import RalphConfig


@pytest.fixture
def exporter(monkeypatch: pytest.MonkeyPatch) -> InMemorySpanExporter:
    """Route spans from the decorator to an in-memory exporter."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr(
        telemetry.trace, "get_tracer", lambda name, *args, **kwargs: provider.get_tracer(name)
    )
    return exporter


class TestSetupTelemetry:
    def test_returns_tracer_and_meter(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OTLP_ENABLED", "false")

        tracer, meter = telemetry.setup_telemetry(RalphConfig())
        telemetry.create_metrics(meter)

        assert isinstance(tracer, trace.Tracer)
        telemetry.tasks_counter.add(1, {"status": "completed"})


class TestTraceSideChannelTool:
    """Tests for trace_side_channel_tool()."""

    def test_successful_call(self, exporter: InMemorySpanExporter) -> None:
        @telemetry.trace_side_channel_tool("task_complete")
        def tool(notes=None):
            return {"success": True, "taskId": "task-001"}

        assert tool(notes="done")["success"] is True

        (span,) = exporter.get_finished_spans()
        assert span.name == "mcp.tool.task_complete"
        assert span.attributes["ralph.task_id"] == "task-001"
        assert "done" in span.attributes["mcp.params"]
        assert span.status.status_code == StatusCode.OK

    def test_rejected_call_marks_error(self, exporter: InMemorySpanExporter) -> None:
        @telemetry.trace_side_channel_tool("task_complete")
        def tool():
            return {"success": False, "taskId": "task-002", "error": "not in progress"}

        tool()

        (span,) = exporter.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR

    @pytest.mark.asyncio
    async def test_async_tool_exception(self, exporter: InMemorySpanExporter) -> None:
        @telemetry.trace_side_channel_tool("task_complete")
        async def tool():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await tool()

        (span,) = exporter.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert span.events[0].name == "exception"
