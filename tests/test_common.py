"""
Tests for shared API helpers: UTC normalisation and client IP resolution.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from api.common import ensure_utc, get_real_ip


class TestEnsureUtc:
    def test_none_returns_none(self):
        assert ensure_utc(None) is None

    def test_naive_datetime_becomes_utc(self):
        result = ensure_utc(datetime(2024, 1, 1, 12, 0, 0))
        assert result == datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def test_offset_datetime_converted(self):
        plus_two = timezone(timedelta(hours=2))
        result = ensure_utc(datetime(2024, 1, 1, 12, 0, 0, tzinfo=plus_two))
        assert result.tzinfo == timezone.utc
        assert result.hour == 10

    def test_iso_string_from_sqlite(self):
        result = ensure_utc("2024-01-01 12:00:00.000000")
        assert result == datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def test_enables_grace_window_comparison(self):
        created = ensure_utc(datetime(2024, 1, 1, 10, 0, 0))
        now = datetime(2024, 1, 1, 10, 45, 0, tzinfo=timezone.utc)
        assert (now - created).total_seconds() > 1800


def make_request(client_ip, forwarded=None):
    request = MagicMock()
    request.client.host = client_ip
    request.headers = {"X-Forwarded-For": forwarded} if forwarded else {}
    return request


class TestGetRealIp:
    def test_direct_client(self):
        assert get_real_ip(make_request("203.0.113.5")) == "203.0.113.5"

    def test_forwarded_header_ignored_from_untrusted_client(self):
        with patch("api.common.TRUSTED_PROXIES", {"10.0.0.1"}):
            request = make_request("203.0.113.5", forwarded="198.51.100.1")
            assert get_real_ip(request) == "203.0.113.5"

    def test_forwarded_header_from_trusted_proxy(self):
        with patch("api.common.TRUSTED_PROXIES", {"10.0.0.1"}):
            request = make_request("10.0.0.1", forwarded="198.51.100.1, 10.0.0.1")
            assert get_real_ip(request) == "198.51.100.1"
