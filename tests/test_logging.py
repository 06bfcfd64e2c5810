"""
Tests for redaction of OAuth secrets in log output.
"""

import logging

import httpx

from main import SensitiveDataFilter


def make_record(name, msg, args):
    return logging.LogRecord(name, logging.INFO, __file__, 1, msg, args, None)


class TestSensitiveDataFilter:

    def test_access_log_callback_redacted(self):
        record = make_record(
            "uvicorn.access",
            '%s - "%s %s HTTP/%s" %d',
            ("1.2.3.4:5000", "GET", "/oauth_redirect?code=SECRET&state=STATE", "1.1", 303),
        )

        assert SensitiveDataFilter().filter(record) is True

        message = record.getMessage()
        assert "SECRET" not in message
        assert "STATE" not in message
        assert message == (
            '1.2.3.4:5000 - "GET /oauth_redirect?code=[REDACTED]&state=[REDACTED] HTTP/1.1" 303'
        )

    def test_access_log_args_keep_their_shape(self):
        """Test uvicorn's formatter can still unpack the five access log args."""
        record = make_record(
            "uvicorn.access",
            '%s - "%s %s HTTP/%s" %d',
            ("1.2.3.4:5000", "GET", "/oauth_redirect?code=SECRET", "1.1", 303),
        )
        SensitiveDataFilter().filter(record)

        client_addr, method, full_path, http_version, status_code = record.args
        assert full_path == "/oauth_redirect?code=[REDACTED]"
        assert status_code == 303

    def test_httpx_url_object_redacted(self):
        url = httpx.URL("https://lichess.org/api/token?client_secret=shh&access_token=tok")
        record = make_record(
            "httpx", 'HTTP Request: %s %s "%s %d %s"',
            ("POST", url, "HTTP/1.1", 200, "OK"),
        )
        SensitiveDataFilter().filter(record)

        message = record.getMessage()
        assert "shh" not in message
        assert "=tok" not in message
        assert "client_secret=[REDACTED]&access_token=[REDACTED]" in message

    def test_plain_message_redacted(self):
        record = make_record("httpx", "GET /cb?code_verifier=abc123&x=1", None)
        SensitiveDataFilter().filter(record)
        assert record.getMessage() == "GET /cb?code_verifier=[REDACTED]&x=1"

    def test_unrelated_args_untouched(self):
        url = httpx.URL("https://lichess.org/api/account")
        record = make_record("httpx", "%s %s", ("GET", url))
        SensitiveDataFilter().filter(record)
        assert record.args[1] is url

    def test_installed_on_access_and_httpx_loggers(self):
        for name in ("httpx", "uvicorn.access"):
            filters = logging.getLogger(name).filters
            assert any(isinstance(f, SensitiveDataFilter) for f in filters)
