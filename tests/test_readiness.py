"""Tests for spahost/readiness.py - health probe."""

from unittest.mock import patch

import requests

from spahost.config import ServerConfig
from spahost.readiness import default_health_url, probe_health


class TestDefaultHealthUrl:
    def test_http(self):
        assert default_health_url(ServerConfig(http_port=8080)) == "http://localhost:8080/health"

    def test_https(self):
        config = ServerConfig(use_https=True, https_port=8443)
        assert default_health_url(config) == "https://localhost:8443/health"

    def test_https_disabled(self):
        config = ServerConfig(use_https=True, https_enabled=False, http_port=8080)
        assert default_health_url(config) == "http://localhost:8080/health"


class TestProbeHealth:
    """Tests for probe_health."""

    def test_healthy(self):
        """200 response is healthy and carries the body."""
        with patch('spahost.readiness.requests.get') as mock_get:
            mock_get.return_value.status_code = 200
            mock_get.return_value.json.return_value = {"status": "OK", "uptime": 12.5}

            result = probe_health("https://localhost:6443/health")

            assert result["reachable"] is True
            assert result["healthy"] is True
            assert result["body"]["uptime"] == 12.5
            mock_get.assert_called_once_with(
                "https://localhost:6443/health", verify=False, timeout=2.0
            )

    def test_unhealthy_status(self):
        with patch('spahost.readiness.requests.get') as mock_get:
            mock_get.return_value.status_code = 503
            mock_get.return_value.text = "Service Unavailable"
            mock_get.return_value.json.side_effect = ValueError("not json")

            result = probe_health("http://localhost:6001/health")

            assert result["reachable"] is True
            assert result["healthy"] is False
            assert result["body"] is None
            assert "503" in result["message"]

    def test_connection_refused(self):
        with patch('spahost.readiness.requests.get') as mock_get:
            mock_get.side_effect = requests.exceptions.ConnectionError("refused")

            result = probe_health("http://localhost:6001/health")

            assert result["reachable"] is False
            assert "Cannot connect" in result["message"]

    def test_timeout(self):
        with patch('spahost.readiness.requests.get') as mock_get:
            mock_get.side_effect = requests.exceptions.Timeout()

            result = probe_health("http://localhost:6001/health", timeout=0.5)

            assert result["reachable"] is False
            assert "Timeout" in result["message"]
