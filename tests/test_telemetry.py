"""Tests for OpenTelemetry span helpers."""

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from metagroupsync.logging import clear_sync_context, set_sync_context
from metagroupsync.telemetry import (
    add_span_attributes,
    create_span_context,
    record_exception_in_span,
)


@pytest.fixture
def exporter():
    return InMemorySpanExporter()


@pytest.fixture
def tracer(exporter):
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return provider.get_tracer("tests")


class TestSpanAttributes:
    def test_none_dropped_and_collections_stringified(self, mocker):
        span = mocker.Mock()

        add_span_attributes(span, {"course_id": 20, "link_id": None, "courses": [10, 20]})

        span.set_attribute.assert_any_call("course_id", 20)
        span.set_attribute.assert_any_call("courses", "[10, 20]")
        assert span.set_attribute.call_count == 2

    def test_record_exception_sets_error_status(self, mocker):
        span = mocker.Mock()
        error = RuntimeError("boom")

        record_exception_in_span(span, error)

        span.record_exception.assert_called_once_with(error)
        status = span.set_status.call_args.args[0]
        assert status.status_code == StatusCode.ERROR


class TestCreateSpanContext:
    """Tests for create_span_context."""

    def test_span_carries_attributes_and_sync_context(self, tracer, exporter):
        set_sync_context(run_id="abc123", operation="pass_create")
        try:
            with create_span_context(tracer, "reconcile.pass_create", {"course_id": 20}):
                pass
        finally:
            clear_sync_context()

        (span,) = exporter.get_finished_spans()
        assert span.name == "reconcile.pass_create"
        assert span.attributes["course_id"] == 20
        assert span.attributes["run_id"] == "abc123"
        assert span.attributes["operation"] == "pass_create"
        assert "link_id" not in span.attributes

    def test_exception_propagates(self, tracer, exporter):
        with pytest.raises(RuntimeError):
            with create_span_context(tracer, "reconcile.run"):
                raise RuntimeError("boom")

        (span,) = exporter.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
