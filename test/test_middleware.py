"""
Tests for request-id propagation and the JSON log formatter.
"""

import json
import logging

from cms_kernel.middleware.logging import RequestIdFilter, StructuredFormatter, request_id_var


class TestRequestId:
    def test_generated_request_id(self, client):
        response = client.get("/")

        assert response.headers["X-Request-ID"]

    def test_incoming_request_id_echoed(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"


class TestStructuredFormatter:
    def _record(self, **extra):
        record = logging.LogRecord("cms_kernel.test", logging.WARNING, __file__, 1, "hook %s failed", ("x",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_output_with_extras(self):
        record = self._record(plugin_id="hello", hook="render:before", unrelated="skip")
        token = request_id_var.set("req-9")
        try:
            RequestIdFilter().filter(record)
        finally:
            request_id_var.reset(token)

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "hook x failed"
        assert data["level"] == "WARNING"
        assert data["request_id"] == "req-9"
        assert data["plugin_id"] == "hello"
        assert data["hook"] == "render:before"
        assert "unrelated" not in data
