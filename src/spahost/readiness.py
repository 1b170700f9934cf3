"""Health probe for a running server.

Used by `spahost status` to check whether a server answers on its
/health endpoint. Self-signed certificates are accepted.
"""

import requests
import urllib3

# Suppress SSL warnings for self-signed certs
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


def default_health_url(config) -> str:
    """Health URL for the listener a config would start."""
    if config.wants_https:
        return f"https://localhost:{config.https_port}/health"
    return f"http://localhost:{config.http_port}/health"


def probe_health(url: str, timeout: float = 2.0) -> dict:
    """Query a /health endpoint.

    Args:
        url: Full health URL (http or https)
        timeout: Request timeout in seconds

    Returns:
        Dict with keys: reachable (bool), healthy (bool), status_code (int|None),
        body (dict|None), message (str)
    """
    result = {
        "url": url,
        "reachable": False,
        "healthy": False,
        "status_code": None,
        "body": None,
        "message": "",
    }
    try:
        resp = requests.get(url, verify=False, timeout=timeout)
    except requests.exceptions.ConnectionError as e:
        result["message"] = f"Cannot connect to {url}: {e}"
        return result
    except requests.exceptions.Timeout:
        result["message"] = f"Timeout connecting to {url}"
        return result

    result["reachable"] = True
    result["status_code"] = resp.status_code
    try:
        result["body"] = resp.json()
    except ValueError:
        result["body"] = None

    if resp.status_code == 200:
        result["healthy"] = True
        result["message"] = "Server healthy"
    else:
        result["message"] = f"Unexpected response: {resp.status_code} - {resp.text[:100]}"
    return result
