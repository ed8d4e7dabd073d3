"""Tests for the archive directory layout."""

import pytest

from webclone.layout import (
    infer_extension,
    md5_hex,
    relative_link,
    sanitize_segment,
    url_to_file_path,
)


class TestUrlToFilePath:
    """Tests for on-disk paths."""

    def test_root_page(self, tmp_path):
        p = url_to_file_path(tmp_path, "https://example.com/", "text/html", True)
        assert p == tmp_path / "example.com" / "index.html"

    def test_page_extension_forced_to_html(self, tmp_path):
        p = url_to_file_path(tmp_path, "https://example.com/shop/item.php", "", True)
        assert p == tmp_path / "example.com" / "shop" / "item.html"

    def test_asset_extension_from_content_type(self, tmp_path):
        p = url_to_file_path(tmp_path, "https://example.com/img/logo", "image/png")
        assert p == tmp_path / "example.com" / "img" / "logo.png"

    def test_asset_without_any_extension_gets_hash(self, tmp_path):
        p = url_to_file_path(tmp_path, "https://example.com/blob", "")
        assert p.name == "blob-" + md5_hex("/blob")[:8]

    def test_query_hash_suffix(self, tmp_path):
        p = url_to_file_path(tmp_path, "https://example.com/img?id=3", "image/png")
        assert p.name == "img~" + md5_hex("?id=3")[:6] + ".png"

    def test_distinct_queries_distinct_files(self, tmp_path):
        a = url_to_file_path(tmp_path, "https://example.com/a.css?v=1")
        b = url_to_file_path(tmp_path, "https://example.com/a.css?v=2")
        assert a != b

    def test_port_kept_in_host_directory(self, tmp_path):
        p = url_to_file_path(tmp_path, "http://example.com:8080/a.js")
        assert p.parent.name == "example.com_8080"

    def test_long_path_falls_back_to_hash(self, tmp_path):
        url = "https://example.com/" + "/".join(["s" * 90] * 5)
        p = url_to_file_path(tmp_path, url, "")
        assert p.parent == tmp_path / "example.com"
        assert p.name == md5_hex("/" + "/".join(["s" * 90] * 5))


class TestHelpers:
    """Tests for segment and extension helpers."""

    @pytest.mark.parametrize(
        "raw,expected",
        [("a:b", "a_b"), ("..", "__"), (".", "_"), ("q?x*", "q_x_")],
    )
    def test_sanitize_segment(self, raw, expected):
        assert sanitize_segment(raw) == expected

    def test_sanitize_truncates(self):
        assert len(sanitize_segment("x" * 500)) == 100

    def test_infer_extension(self):
        assert infer_extension("https://example.com/x", "text/css; charset=utf-8") == ".css"
        assert infer_extension("https://example.com/x.woff2", "") == ".woff2"
        assert infer_extension("https://example.com/render?format=webp", "") == ".webp"
        assert infer_extension("https://example.com/x.bin", "application/octet-stream") == ".bin"


class TestRelativeLink:
    """Relative references between archived files."""

    def test_sibling_directory(self, tmp_path):
        page = tmp_path / "example.com" / "index.html"
        asset = tmp_path / "example.com" / "css" / "style.css"
        assert relative_link(page, asset) == "./css/style.css"

    def test_nested_page(self, tmp_path):
        page = tmp_path / "example.com" / "blog" / "post" / "index.html"
        asset = tmp_path / "example.com" / "css" / "style.css"
        assert relative_link(page, asset) == "../../css/style.css"

    def test_other_host(self, tmp_path):
        page = tmp_path / "example.com" / "index.html"
        asset = tmp_path / "cdn.example.net" / "lib.js"
        assert relative_link(page, asset) == "../cdn.example.net/lib.js"
