"""Shared pytest fixtures for spahost tests."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from spahost.config import ServerConfig  # noqa: E402

INDEX_HTML = "<!DOCTYPE html><html><head><title>app</title></head><body>entry</body></html>"


@pytest.fixture
def build_dir(tmp_path):
    """Create a minimal SPA build output.

    Creates:
    - index.html (entry document)
    - main.dart.js, styles.css, canvaskit.wasm
    - version.json (build version)
    - assets/config.json, assets/logo.png
    - docs/index.html (directory with its own index)
    """
    build = tmp_path / 'build' / 'web'
    (build / 'assets').mkdir(parents=True)
    (build / 'docs').mkdir()

    (build / 'index.html').write_text(INDEX_HTML)
    (build / 'main.dart.js').write_text("console.log('app');\n" * 100)
    (build / 'styles.css').write_text("body { margin: 0; }\n")
    (build / 'canvaskit.wasm').write_bytes(b"\x00asm\x01\x00\x00\x00")
    (build / 'version.json').write_text(json.dumps({"version": "1.2.3", "build": 42}))
    (build / 'assets' / 'config.json').write_text('{"theme": "dark"}')
    (build / 'assets' / 'logo.png').write_bytes(b"\x89PNG\r\n\x1a\n")
    (build / 'docs' / 'index.html').write_text("<html>docs</html>")

    return build


@pytest.fixture
def make_config(tmp_path, build_dir):
    """Factory for ServerConfig rooted in tmp_path with ephemeral ports."""

    def _make(**overrides):
        values = {
            "http_port": 0,
            "https_port": 0,
            "bind": "127.0.0.1",
            "cert_path": tmp_path / 'certs' / 'localhost.crt',
            "key_path": tmp_path / 'certs' / 'localhost.key',
            "build_path": build_dir,
            "version_file": tmp_path / 'version.json',
            "environment": "test",
            "keep_alive_timeout": 1.0,
        }
        values.update(overrides)
        return ServerConfig(**values)

    return _make
