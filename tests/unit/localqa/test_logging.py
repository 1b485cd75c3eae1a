"""
Unit tests for structured logging and correlation context.
"""

import json
import logging

from localqa.core.logging import (
    CorrelationContext,
    CorrelationFilter,
    HumanReadableFormatter,
    StructuredFormatter,
    log_with_context,
)


def _record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("localqa.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    """Tests for the log formatters."""

    def test_structured_includes_correlation_fields(self):
        formatter = StructuredFormatter(include_timestamp=False)

        line = formatter.format(_record(query_id="q-1", document_id="doc-1"))
        data = json.loads(line)

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["query_id"] == "q-1"
        assert data["document_id"] == "doc-1"
        assert "timestamp" not in data

    def test_human_readable_appends_context(self):
        formatter = HumanReadableFormatter(include_timestamp=False)

        line = formatter.format(_record(run_id="run-7"))

        assert line == "localqa.test - INFO - hello [run_id=run-7]"


class TestCorrelationContext:
    """Tests for CorrelationContext and CorrelationFilter."""

    def test_nested_contexts_merge_and_restore(self):
        with CorrelationContext(run_id="run-1"):
            with CorrelationContext(document_id="doc-1"):
                assert CorrelationContext.get_current() == {"run_id": "run-1", "document_id": "doc-1"}
            assert CorrelationContext.get_current() == {"run_id": "run-1"}
        assert CorrelationContext.get_current() == {}

    def test_filter_copies_context_onto_record(self):
        record = _record()

        with CorrelationContext(query_id="q-9"):
            assert CorrelationFilter().filter(record) is True

        assert record.query_id == "q-9"

    def test_filter_keeps_explicit_fields(self):
        record = _record(query_id="explicit")

        with CorrelationContext(query_id="ambient"):
            CorrelationFilter().filter(record)

        assert record.query_id == "explicit"

    def test_log_with_context_merges_extra_fields(self, caplog):
        logger = logging.getLogger("localqa.test")

        with caplog.at_level(logging.INFO, logger="localqa.test"):
            with CorrelationContext(query_id="q-3"):
                log_with_context(logger, logging.INFO, "state changed", runtime_state="healthy")

        record = caplog.records[-1]
        assert record.getMessage() == "state changed"
        assert record.query_id == "q-3"
        assert record.runtime_state == "healthy"
