"""
Tests for structured logging and the audit chain.
"""

import io
import json
import logging

import pytest


@pytest.fixture
def stream():
    from minter.observability import configure_logging

    buf = io.StringIO()
    configure_logging("debug", "json", stream=buf)
    yield buf
    root = logging.getLogger("minter")
    for handler in list(root.handlers):
        if not isinstance(handler, logging.NullHandler):
            root.removeHandler(handler)


def _events(buf):
    return [json.loads(line) for line in buf.getvalue().splitlines()]


class TestStructuredLogging:

    def test_event_fields(self, stream):
        from minter.observability import MintLayer, get_logger, run_id_var

        token = run_id_var.set("run-abc")
        try:
            get_logger("test", MintLayer.LEDGER).info("Recorded", entry_id="e1", attempts=2)
        finally:
            run_id_var.reset(token)

        (event,) = _events(stream)
        assert event["message"] == "Recorded"
        assert event["logger"] == "minter.ledger.test"
        assert event["layer"] == "ledger"
        assert event["run_id"] == "run-abc"
        assert event["entry_id"] == "e1"
        assert event["context"] == {"attempts": 2}

    def test_text_format(self):
        from minter.observability import MintLayer, configure_logging, get_logger

        buf = io.StringIO()
        configure_logging("info", "text", stream=buf)
        try:
            get_logger("test", MintLayer.CLI).warning("Careful", entry_id="x", n=1)
        finally:
            logging.getLogger("minter").handlers = [
                h for h in logging.getLogger("minter").handlers if isinstance(h, logging.NullHandler)
            ]
        assert buf.getvalue().strip() == "WARNING Careful entry=x n=1"

    def test_timed_operation(self, stream):
        from minter.observability import MintLayer, get_logger, timed_operation

        logger = get_logger("test", MintLayer.MANIFEST)

        @timed_operation(logger, "explode")
        def explode():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            explode()

        (event,) = _events(stream)
        assert event["operation"] == "explode"
        assert event["level"] == "warning"
        assert "duration_ms" in event
        assert explode.__name__ == "explode"


class TestAuditLogger:

    def test_chain_links_events(self, stream):
        from minter.observability import AuditLogger, MintLayer, get_logger

        audit = AuditLogger(get_logger("audit", MintLayer.ORCHESTRATOR))
        first = audit.log("actor", "mint", "a", "succeeded", token_id=1)
        h1 = audit.last_hash
        audit.log("actor", "mint", "b", "failed", failure_kind="remote_rejected")

        assert h1 == AuditLogger.chain_hash(first, AuditLogger.GENESIS)
        assert audit.last_hash != h1
        assert [e["entry_id"] for e in _events(stream)] == ["a", "b"]
