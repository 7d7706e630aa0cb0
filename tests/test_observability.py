"""
Tests for the logging helpers.
"""

import structlog

from iap.observability import log_context


class TestLogContext:
    """Tests for log_context."""

    def test_binds_and_unbinds(self):
        """Values are bound inside the block and removed after it."""
        structlog.contextvars.clear_contextvars()
        with log_context(request_id="req-1", profile_id="p"):
            assert structlog.contextvars.get_contextvars() == {
                "request_id": "req-1",
                "profile_id": "p",
            }
        assert structlog.contextvars.get_contextvars() == {}

    def test_unbinds_on_error(self):
        """An exception inside the block still clears the context."""
        structlog.contextvars.clear_contextvars()
        try:
            with log_context(request_id="req-2"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert structlog.contextvars.get_contextvars() == {}
