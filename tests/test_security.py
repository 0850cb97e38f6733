"""Tests for outbound URL validation used by the website scraper."""

import sys
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from ejendom_agent.security import validate_url


class TestValidateUrl:
    """SSRF protection tests."""

    def test_allows_https(self):
        assert validate_url("https://www.algade.dk/kontakt", resolve=False) is None

    def test_allows_http(self):
        assert validate_url("http://algade.dk/", resolve=False) is None

    @pytest.mark.parametrize("url", ["file:///etc/passwd", "javascript:alert(1)", "ftp://algade.dk/"])
    def test_blocks_schemes(self, url):
        result = validate_url(url, resolve=False)
        assert result is not None
        assert "scheme" in result

    def test_blocks_metadata(self):
        result = validate_url("http://169.254.169.254/latest/meta-data/", resolve=False)
        assert "metadata" in result

    def test_metadata_blocked_even_when_private_allowed(self):
        assert validate_url("http://169.254.169.254/", allow_private=True) is not None

    @pytest.mark.parametrize("url", [
        "http://localhost/",
        "http://127.0.0.1:8080/",
        "http://10.0.0.1/",
        "http://192.168.1.1/",
        "http://[::1]/",
    ])
    def test_blocks_private(self, url):
        result = validate_url(url, resolve=False)
        assert result is not None
        assert "private" in result

    def test_allow_private(self):
        assert validate_url("http://192.168.1.1/", allow_private=True) is None

    def test_blocks_empty_hostname(self):
        assert validate_url("http:///path") == "URL has no hostname."

    @pytest.mark.parametrize("port", [6379, 11211, 27017, 5432, 3306])
    def test_blocks_dangerous_ports(self, port):
        result = validate_url(f"http://algade.dk:{port}/", resolve=False)
        assert result is not None
        assert str(port) in result

    def test_invalid_port(self):
        assert validate_url("http://algade.dk:99999/", resolve=False).startswith("Invalid URL")

    def test_dns_rebinding(self):
        answer = [(None, None, None, None, ("10.1.2.3", 0))]
        with patch("ejendom_agent.security.socket.getaddrinfo", return_value=answer):
            result = validate_url("http://rebind.example.dk/")
        assert result is not None
        assert "private" in result

    def test_public_resolution_allowed(self):
        answer = [(None, None, None, None, ("93.184.216.34", 0))]
        with patch("ejendom_agent.security.socket.getaddrinfo", return_value=answer):
            assert validate_url("https://algade.dk/") is None
