"""Tests for spahost/assets.py - asset header policy and SPA fallback."""

import pytest

from spahost.assets import (
    AssetClass,
    AssetPolicy,
    DEFAULT_RULE,
    EntryDocumentUnavailable,
    CACHE_STATIC_DEFAULT,
)


@pytest.fixture
def policy(build_dir):
    return AssetPolicy(build_dir)


class TestClassify:
    """classify returns the exact rule for each extension class."""

    @pytest.mark.parametrize("path,cache_control,content_type", [
        ("/main.dart.js", "public, max-age=31536000", "application/javascript; charset=utf-8"),
        ("/styles.css", "public, max-age=31536000", None),
        ("/canvaskit/canvaskit.wasm", None, "application/wasm"),
        ("/index.html", "no-cache", "text/html; charset=utf-8"),
        ("/version.json", "no-cache, no-store, must-revalidate", "application/json; charset=utf-8"),
        ("/assets/config.json", None, "application/json; charset=utf-8"),
    ])
    def test_rule_table(self, policy, path, cache_control, content_type):
        rule = policy.classify(path)
        assert rule.cache_control == cache_control
        assert rule.content_type == content_type

    def test_version_json_extra_headers(self, policy):
        """version.json forbids caching with Pragma/Expires too."""
        rule = policy.classify("/version.json")
        assert rule.asset_class is AssetClass.VERSION
        assert dict(rule.extra_headers) == {"Pragma": "no-cache", "Expires": "0"}

    def test_version_json_matches_by_name(self, policy):
        """Only a file named exactly version.json gets the version rule."""
        assert policy.classify("/nested/version.json").asset_class is AssetClass.VERSION
        assert policy.classify("/app.version.json").asset_class is AssetClass.JSON

    @pytest.mark.parametrize("path", ["/logo.png", "/favicon.ico", "/README", "/font.woff2"])
    def test_unknown_extensions_get_default(self, policy, path):
        rule = policy.classify(path)
        assert rule is DEFAULT_RULE
        assert rule.cache_control is None
        assert rule.content_type is None

    def test_case_insensitive(self, policy):
        assert policy.classify("/APP.JS").asset_class is AssetClass.SCRIPT

    def test_query_string_ignored(self, policy):
        assert policy.classify("/main.dart.js?v=123").asset_class is AssetClass.SCRIPT

    def test_strict_html_cache(self, build_dir):
        strict = AssetPolicy(build_dir, strict_html_cache=True)
        rule = strict.classify("/index.html")
        assert rule.cache_control == "no-cache, no-store, must-revalidate"
        assert dict(rule.extra_headers) == {"Pragma": "no-cache", "Expires": "0"}
        assert rule.content_type == "text/html; charset=utf-8"


class TestHeadersFor:
    """headers_for fills in static-file defaults for unset rule fields."""

    def test_script(self, policy, build_dir):
        headers = policy.headers_for(build_dir / "main.dart.js")
        assert headers == {
            "Content-Type": "application/javascript; charset=utf-8",
            "Cache-Control": "public, max-age=31536000",
        }

    def test_stylesheet_content_type_guessed(self, policy, build_dir):
        headers = policy.headers_for(build_dir / "styles.css")
        assert headers["Content-Type"] == "text/css"

    def test_default_cache_control(self, policy, build_dir):
        headers = policy.headers_for(build_dir / "assets" / "logo.png")
        assert headers["Cache-Control"] == CACHE_STATIC_DEFAULT
        assert headers["Content-Type"] == "image/png"

    def test_unknown_type(self, policy, build_dir):
        headers = policy.headers_for(build_dir / "blob.unknownext")
        assert headers["Content-Type"] == "application/octet-stream"

    def test_version_headers(self, policy, build_dir):
        headers = policy.headers_for(build_dir / "version.json")
        assert headers["Pragma"] == "no-cache"
        assert headers["Expires"] == "0"


class TestResolve:
    """resolve maps unmatched routes to the entry document."""

    def test_existing_file(self, policy, build_dir):
        assert policy.resolve("/main.dart.js") == (build_dir / "main.dart.js").resolve()

    def test_nested_existing_file(self, policy, build_dir):
        assert policy.resolve("/assets/config.json") == (build_dir / "assets" / "config.json").resolve()

    @pytest.mark.parametrize("path", [
        "/",
        "",
        "/dashboard",
        "/users/42/settings",
        "/a/b/c/d/e/f",
        "/missing.js",
        "/assets",
        "/assets/",
        "/deep/route?tab=2#anchor",
    ])
    def test_fallback(self, policy, path):
        assert policy.resolve(path) == policy.entry_path
        assert policy.is_fallback(path)

    @pytest.mark.parametrize("path", [
        "/../../etc/passwd",
        "/%2e%2e/%2e%2e/etc/passwd",
        "/..%2f..%2fetc/passwd",
        "/assets/..\\..\\secret",
    ])
    def test_traversal_falls_back(self, policy, path):
        assert policy.resolve(path) == policy.entry_path

    def test_outside_root_file_not_served(self, policy, build_dir):
        secret = build_dir.parent / "secret.txt"
        secret.write_text("secret")
        assert policy.resolve("/../secret.txt") == policy.entry_path

    def test_directory_index(self, policy, build_dir):
        assert policy.resolve("/docs/") == (build_dir / "docs" / "index.html").resolve()

    def test_percent_encoded_name(self, policy, build_dir):
        (build_dir / "my file.js").write_text("x")
        assert policy.resolve("/my%20file.js") == (build_dir / "my file.js").resolve()

    def test_fallback_does_not_recurse(self, tmp_path):
        """A missing entry document still resolves to the entry path."""
        policy = AssetPolicy(tmp_path / "empty")
        assert policy.resolve("/anything") == policy.entry_path


class TestReadEntryDocument:
    def test_reads_entry(self, policy):
        assert b"entry" in policy.read_entry_document()

    def test_missing_entry(self, tmp_path):
        policy = AssetPolicy(tmp_path / "no-build")
        with pytest.raises(EntryDocumentUnavailable) as exc_info:
            policy.read_entry_document()
        assert exc_info.value.path == tmp_path / "no-build" / "index.html"

    def test_from_config(self, make_config, build_dir):
        policy = AssetPolicy.from_config(make_config(strict_html_cache=True))
        assert policy.root == build_dir
        assert policy.classify("/index.html").cache_control.startswith("no-cache, no-store")


class TestBuildPathWithUrlCharacters:
    """Build directories may contain characters that are special in URLs."""

    @pytest.fixture(params=["C#", "what?", "100%25"])
    def odd_build(self, tmp_path, request):
        root = tmp_path / request.param / "build" / "web"
        root.mkdir(parents=True)
        (root / "index.html").write_text("<html>entry</html>")
        (root / "main.js").write_text("console.log(1);")
        (root / "version.json").write_text("{}")
        return AssetPolicy(root)

    def test_entry_document_headers(self, odd_build):
        headers = odd_build.headers_for(odd_build.resolve("/dashboard"))
        assert headers == {
            "Content-Type": "text/html; charset=utf-8",
            "Cache-Control": "no-cache",
        }

    def test_script_headers(self, odd_build):
        headers = odd_build.headers_for(odd_build.resolve("/main.js"))
        assert headers == {
            "Content-Type": "application/javascript; charset=utf-8",
            "Cache-Control": "public, max-age=31536000",
        }

    def test_version_headers(self, odd_build):
        headers = odd_build.headers_for(odd_build.resolve("/version.json"))
        assert headers["Cache-Control"] == "no-cache, no-store, must-revalidate"
        assert headers["Pragma"] == "no-cache"
