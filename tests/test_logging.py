"""
Tests for core/logging.py
"""
import json
import logging

from clippingai.core.logging import JsonFormatter


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def _record(self, **extra):
        record = logging.LogRecord(
            name="clippingai.services.search",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="Search failed for %r",
            args=("acme",),
            exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_structured_fields(self):
        line = JsonFormatter().format(self._record(run_id="r1", stage="search", query="acme"))
        payload = json.loads(line)
        assert payload["message"] == "Search failed for 'acme'"
        assert payload["level"] == "WARNING"
        assert payload["run_id"] == "r1"
        assert payload["stage"] == "search"
        assert payload["query"] == "acme"
        assert payload["service"] == "clippingai_pipeline"
        assert "candidate" not in payload

    def test_exception_info_is_included(self):
        try:
            raise ValueError("bad")
        except ValueError:
            import sys

            record = self._record()
            record.exc_info = sys.exc_info()
        payload = json.loads(JsonFormatter().format(record))
        assert "ValueError: bad" in payload["exc_info"]


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_installs_json_handler_once(self, monkeypatch):
        import clippingai.core.logging as log_module

        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        monkeypatch.setattr(log_module, "_configured", False)
        try:
            log_module.configure_logging("WARNING")
            assert root.level == logging.WARNING
            assert isinstance(root.handlers[-1].formatter, JsonFormatter)
            assert logging.getLogger("httpx").level == logging.WARNING

            log_module.configure_logging("DEBUG")
            assert root.level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
