"""Tests for path resolution and directory listings."""
import os

import pytest

from site_files import (
    ICON_CATEGORIES,
    TB,
    Collator,
    PathForbiddenError,
    PathNotFoundError,
    build_directory_listing,
    format_size,
    icon_category,
    render_listing_page,
    resolve_request_path,
)


@pytest.fixture
def tree(site_root):
    (site_root / "index.html").write_text("<h1>home</h1>")
    (site_root / "docs").mkdir()
    (site_root / "docs" / "guide.md").write_text("# guide")
    (site_root / ".env").write_text("SECRET=1")
    (site_root / "my file.txt").write_text("spaces")
    return site_root


class TestResolveRequestPath:

    @pytest.mark.parametrize("path", [
        "../secret",
        "..",
        "%2e%2e/secret",
        "..%2fsecret",
        "docs/../../secret",
        "%2E%2E/%2E%2E/etc/passwd",
    ])
    def test_escape_is_forbidden(self, tree, path):
        with pytest.raises(PathForbiddenError):
            resolve_request_path(path, str(tree))

    def test_sibling_with_common_prefix_is_forbidden(self, tmp_path, tree):
        sibling = tmp_path / "www2"
        sibling.mkdir()
        (sibling / "x.txt").write_text("x")
        with pytest.raises(PathForbiddenError):
            resolve_request_path("../www2/x.txt", str(tree))

    def test_rooted_dotdot_collapses_inside_root(self, tree):
        resolved = resolve_request_path("/../docs/guide.md", str(tree))
        assert resolved.fs_path == os.path.join(str(tree), "docs", "guide.md")

    def test_nul_byte_is_forbidden(self, tree):
        with pytest.raises(PathForbiddenError):
            resolve_request_path("/index.html%00.png", str(tree))

    def test_file(self, tree):
        resolved = resolve_request_path("/index.html", str(tree))
        assert resolved.fs_path == os.path.join(str(tree), "index.html")
        assert not resolved.is_dir
        assert resolved.redirect is None

    def test_percent_decoding(self, tree):
        resolved = resolve_request_path("/my%20file.txt", str(tree))
        assert resolved.fs_path.endswith("my file.txt")

    def test_missing(self, tree):
        with pytest.raises(PathNotFoundError) as excinfo:
            resolve_request_path("/nope.txt", str(tree))
        assert excinfo.value.status_code == 404

    def test_directory_without_slash_redirects(self, tree):
        resolved = resolve_request_path("/docs", str(tree))
        assert resolved.is_dir
        assert resolved.redirect == "/docs/"

    def test_protocol_relative_path_redirects_on_same_host(self, tree):
        (tree / "evil.com").mkdir()
        resolved = resolve_request_path("//evil.com", str(tree))
        assert resolved.redirect == "/evil.com/"

    def test_redirect_is_percent_encoded(self, tree):
        (tree / "my dir").mkdir()
        assert resolve_request_path("/my%20dir", str(tree)).redirect == "/my%20dir/"

    def test_directory_with_slash(self, tree):
        resolved = resolve_request_path("/docs/", str(tree))
        assert resolved.is_dir
        assert resolved.redirect is None

    def test_root(self, tree):
        resolved = resolve_request_path("/", str(tree))
        assert resolved.fs_path == str(tree)
        assert resolved.redirect is None

    def test_hidden_files_served_by_default(self, tree):
        assert resolve_request_path("/.env", str(tree)).fs_path.endswith(".env")

    def test_hidden_files_denied_when_disabled(self, tree):
        (tree / ".git").mkdir()
        (tree / ".git" / "config").write_text("[core]")
        with pytest.raises(PathNotFoundError):
            resolve_request_path("/.env", str(tree), serve_hidden=False)
        with pytest.raises(PathNotFoundError):
            resolve_request_path("/.git/config", str(tree), serve_hidden=False)
        assert resolve_request_path("/docs/guide.md", str(tree), serve_hidden=False)


class TestFormatSize:

    @pytest.mark.parametrize("size, expected", [
        (0, "0 Byte"),
        (1, "1 Byte"),
        (2, "2 Bytes"),
        (1023, "1023 Bytes"),
        (1024, "1.00 KB"),
        (1536, "1.50 KB"),
        (2048, "2.00 KB"),
        (5 * 1024 * 1024, "5.00 MB"),
        (3 * 1024 ** 3, "3.00 GB"),
        (TB, "1.00 TB"),
        (TB - 1, "1024.00 GB"),
    ])
    def test_sizes(self, size, expected):
        assert format_size(size) == expected


class TestIconCategory:

    def test_buckets(self):
        assert icon_category("docs", True) == "folder"
        assert icon_category("index.HTML", False) == "web"
        assert icon_category("main.py", False) == "code"
        assert icon_category("notes.pdf", False) == "document"
        assert icon_category("logo.png", False) == "image"
        assert icon_category("clip.mp4", False) == "video"
        assert icon_category("song.flac", False) == "audio"
        assert icon_category("bundle.tar.gz", False) == "archive"
        assert icon_category("run.sh", False) == "executable"
        assert icon_category("Makefile", False) == "default"
        assert icon_category("data.unknown", False) == "default"

    def test_no_extension_in_two_buckets(self):
        seen = {}
        for category, exts in ICON_CATEGORIES.items():
            for ext in exts:
                assert ext not in seen, f"{ext} in {seen.get(ext)} and {category}"
                seen[ext] = category


class TestDirectoryListing:

    @pytest.fixture
    def mixed(self, site_root):
        for name in ["b.txt", "A.txt", "readme", "z.css", "c.md", ".env", "LICENSE"]:
            (site_root / name).write_text(name)
        for name in ["Zoo", "alpha", ".git"]:
            (site_root / name).mkdir()
        return site_root

    def test_order(self, mixed):
        listing = build_directory_listing(str(mixed), "/")
        names = [e.name for e in listing.entries]
        assert names == ["alpha/", "Zoo/", "z.css", "c.md", "A.txt", "b.txt", "LICENSE", "readme"]

    def test_hidden_entries_excluded(self, mixed):
        names = [e.name for e in build_directory_listing(str(mixed), "/").entries]
        assert ".env" not in names
        assert ".git/" not in names

    def test_deterministic(self, mixed):
        first = [e.name for e in build_directory_listing(str(mixed), "/").entries]
        second = [e.name for e in build_directory_listing(str(mixed), "/").entries]
        assert first == second

    def test_case_variants_are_stable(self, site_root):
        for name in ["b.txt", "B.TXT"]:
            try:
                (site_root / name).write_text(name)
            except OSError:
                pytest.skip("case-insensitive filesystem")
        if len(os.listdir(site_root)) != 2:
            pytest.skip("case-insensitive filesystem")
        names = [e.name for e in build_directory_listing(str(site_root), "/").entries]
        assert names == ["B.TXT", "b.txt"]

    def test_entry_fields(self, site_root):
        (site_root / "sub dir").mkdir()
        (site_root / "report #1.pdf").write_bytes(b"x" * 2048)

        listing = build_directory_listing(str(site_root), "/files/")
        folder, report = listing.entries

        assert folder.is_dir
        assert folder.name == "sub dir/"
        assert folder.url == "/files/sub%20dir/"
        assert folder.size == "-"
        assert folder.icon == "folder"

        assert not report.is_dir
        assert report.url == "/files/report%20%231.pdf"
        assert report.size == "2.00 KB"
        assert report.icon == "document"
        assert len(report.mod_time) == len("2024-01-01 00:00:00")

    def test_parent_links(self, site_root):
        (site_root / "a").mkdir()
        (site_root / "a" / "b").mkdir()

        root_listing = build_directory_listing(str(site_root), "/")
        assert not root_listing.has_parent

        nested = build_directory_listing(str(site_root / "a" / "b"), "/a/b/")
        assert nested.has_parent
        assert nested.parent == "/a/"

        top = build_directory_listing(str(site_root / "a"), "/a/")
        assert top.parent == "/"

    def test_custom_collator(self, site_root):
        for name in ["apple.txt", "Banana.txt"]:
            (site_root / name).write_text(name)

        class CaseSensitive(Collator):
            def key(self, text):
                return text

        names = [e.name for e in build_directory_listing(str(site_root), "/", CaseSensitive()).entries]
        assert names == ["Banana.txt", "apple.txt"]

    def test_missing_directory_raises(self, site_root):
        with pytest.raises(OSError):
            build_directory_listing(str(site_root / "gone"), "/gone/")

    def test_render_escapes_names(self, site_root):
        (site_root / "<script>.txt").write_text("x")
        page = render_listing_page(build_directory_listing(str(site_root), "/sub/"))

        assert "<script>.txt" not in page
        assert "&lt;script&gt;.txt" in page
        assert "Index of /sub/" in page
        assert 'href="/"' in page
