"""Tests for workspace resolution, path containment and file operations.

Validates:
  - Resolver is idempotent and creates a server root at most once
  - Containment guard compares whole path segments, not string prefixes
  - Directory listing order and entry shape
  - Read / write / delete / mkdir semantics and their error types
  - Upload ingestion, including zip extraction and hostile archives
"""

import importlib
import io
import os
import zipfile

import pytest

from bridge.app.errors import AccessDenied, NotFound, StorageError, ValidationError


@pytest.fixture(autouse=True)
def _servers_root(tmp_path, monkeypatch):
    """Point SERVERS_PATH at a temp dir and reload the module to pick it up."""
    servers = tmp_path / "servers"
    servers.mkdir()
    monkeypatch.setenv("SERVERS_PATH", str(servers))
    monkeypatch.delenv("BRIDGE_STRICT_PATHS", raising=False)

    from bridge.app import workspace_tools
    importlib.reload(workspace_tools)

    yield str(servers)


@pytest.fixture()
def wt():
    from bridge.app import workspace_tools
    return workspace_tools


@pytest.fixture()
def root(wt):
    return wt.ensure_server_directory("alpha")


def _zip_bytes(entries: dict) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in entries.items():
            zf.writestr(name, content)
    return buf.getvalue()


# =====================================================================
# Resolver
# =====================================================================

class TestResolver:
    def test_creates_root_on_first_access(self, wt, _servers_root):
        path = wt.ensure_server_directory("fresh")
        assert path == os.path.join(_servers_root, "fresh")
        assert os.path.isdir(path)

    def test_idempotent_and_creates_once(self, wt, monkeypatch):
        calls = []
        real_makedirs = os.makedirs

        def counting(path, *args, **kwargs):
            calls.append(path)
            return real_makedirs(path, *args, **kwargs)

        monkeypatch.setattr(wt.os, "makedirs", counting)
        first = wt.ensure_server_directory("twice")
        second = wt.ensure_server_directory("twice")
        assert first == second
        assert calls == [first]

    @pytest.mark.parametrize("bad", ["", ".", "..", "a/b", "..\\x"])
    def test_rejects_unsafe_ids(self, wt, bad):
        with pytest.raises(ValidationError):
            wt.get_server_path(bad)

    def test_storage_failure_is_storage_error(self, wt, monkeypatch):
        def boom(*args, **kwargs):
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr(wt.os, "makedirs", boom)
        with pytest.raises(StorageError):
            wt.ensure_server_directory("locked")

    def test_require_missing_server(self, wt):
        with pytest.raises(NotFound):
            wt.require_server_directory("ghost")

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("My Server", "my-server"),
            ("api_v2!", "api-v2-"),
            ("already-ok-42", "already-ok-42"),
            ("../../etc", "------etc"),
        ],
    )
    def test_sanitize_server_name(self, wt, name, expected):
        assert wt.sanitize_server_name(name) == expected


# =====================================================================
# Containment guard
# =====================================================================

class TestConfine:
    @pytest.mark.parametrize("requested", [".", "", "src", "src/../lib", "./a/./b"])
    def test_accepts_paths_inside(self, wt, root, requested):
        full = wt.confine(root, requested)
        assert full == root or full.startswith(root + os.sep)

    def test_root_itself(self, wt, root):
        assert wt.confine(root, ".") == root

    @pytest.mark.parametrize("requested", ["..", "../escape", "a/../../b", "/etc/passwd"])
    def test_rejects_escapes(self, wt, root, requested):
        with pytest.raises(AccessDenied):
            wt.confine(root, requested)

    def test_sibling_with_shared_prefix_rejected(self, wt, root, _servers_root):
        sibling = os.path.join(_servers_root, "alpha-evil")
        os.makedirs(sibling)
        with pytest.raises(AccessDenied):
            wt.confine(root, "../alpha-evil")
        with pytest.raises(AccessDenied):
            wt.confine(root, "../alpha-evil/secret.txt")

    @pytest.mark.parametrize("requested", ["a\0b", "\0", "../x\0"])
    def test_rejects_nul_bytes(self, wt, root, requested):
        with pytest.raises(ValidationError):
            wt.confine(root, requested)

    def test_absolute_path_inside_root_allowed(self, wt, root):
        inner = os.path.join(root, "inner")
        assert wt.confine(root, inner) == inner

    def test_symlink_is_lexical_by_default(self, wt, root, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        os.symlink(outside, os.path.join(root, "link"))
        assert wt.confine(root, "link") == os.path.join(root, "link")

    def test_strict_mode_resolves_symlinks(self, wt, root, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        os.symlink(outside, os.path.join(root, "link"))
        with pytest.raises(AccessDenied):
            wt.confine(root, "link", strict=True)

    def test_is_within_segment_boundary(self, wt):
        assert wt.is_within("/srv/ws", "/srv/ws")
        assert wt.is_within("/srv/ws", "/srv/ws/a")
        assert not wt.is_within("/srv/ws", "/srv/ws-evil")
        assert not wt.is_within("/srv/ws", "/srv")


# =====================================================================
# Directory service
# =====================================================================

class TestListFiles:
    def test_directories_first_then_by_name(self, wt, root):
        for d in ("zeta", "alpha"):
            os.makedirs(os.path.join(root, d))
        for f in ("b.txt", "a.txt"):
            with open(os.path.join(root, f), "w") as fh:
                fh.write("x")
        result = wt.list_files("alpha", ".")
        assert [f["name"] for f in result["files"]] == ["alpha", "zeta", "a.txt", "b.txt"]
        assert result["currentPath"] == "."

    def test_entry_shape(self, wt, root):
        os.makedirs(os.path.join(root, "src"))
        with open(os.path.join(root, "src", "app.py"), "w") as fh:
            fh.write("print(1)\n")
        result = wt.list_files("alpha", "src")
        entry = result["files"][0]
        assert entry["name"] == "app.py"
        assert entry["type"] == "file"
        assert entry["size"] == 9
        assert entry["path"] == os.path.join("src", "app.py")
        assert "T" in entry["modified"]
        assert result["currentPath"] == "src"

    def test_missing_directory(self, wt, root):
        with pytest.raises(NotFound):
            wt.list_files("alpha", "nope")

    def test_file_is_not_listable(self, wt, root):
        with open(os.path.join(root, "f.txt"), "w") as fh:
            fh.write("")
        with pytest.raises(ValidationError):
            wt.list_files("alpha", "f.txt")

    def test_escape_denied(self, wt, root):
        with pytest.raises(AccessDenied):
            wt.list_files("alpha", "..")

    def test_unseen_server_is_created(self, wt, _servers_root):
        assert wt.list_files("brand-new", ".")["files"] == []
        assert os.path.isdir(os.path.join(_servers_root, "brand-new"))


class TestReadWrite:
    def test_write_then_read(self, wt, root):
        wt.write_file("alpha", "hello.txt", "hi there")
        result = wt.read_file("alpha", "hello.txt")
        assert result["content"] == "hi there"
        assert result["size"] == 8

    def test_identical_writes_are_idempotent(self, wt, root):
        first = wt.write_file("alpha", "same.txt", "payload")
        second = wt.write_file("alpha", "same.txt", "payload")
        assert first["size"] == second["size"] == 7
        assert wt.read_file("alpha", "same.txt")["content"] == "payload"

    def test_overwrite(self, wt, root):
        wt.write_file("alpha", "f.txt", "long content")
        wt.write_file("alpha", "f.txt", "short")
        assert wt.read_file("alpha", "f.txt")["content"] == "short"

    def test_none_content_writes_empty_file(self, wt, root):
        assert wt.write_file("alpha", "empty.txt", None)["size"] == 0

    def test_missing_parent_without_create(self, wt, root):
        with pytest.raises(NotFound):
            wt.write_file("alpha", "deep/dir/f.txt", "x")

    def test_create_directories(self, wt, root):
        wt.write_file("alpha", "deep/dir/f.txt", "x", create_directories=True)
        assert os.path.isfile(os.path.join(root, "deep", "dir", "f.txt"))

    def test_write_escape_denied(self, wt, root, _servers_root):
        with pytest.raises(AccessDenied):
            wt.write_file("alpha", "../beta/owned.txt", "x", create_directories=True)
        assert not os.path.exists(os.path.join(_servers_root, "beta", "owned.txt"))

    def test_path_required(self, wt, root):
        with pytest.raises(ValidationError):
            wt.read_file("alpha", "")
        with pytest.raises(ValidationError):
            wt.write_file("alpha", None, "x")

    def test_read_missing(self, wt, root):
        with pytest.raises(NotFound):
            wt.read_file("alpha", "missing.txt")

    def test_read_directory(self, wt, root):
        os.makedirs(os.path.join(root, "d"))
        with pytest.raises(ValidationError):
            wt.read_file("alpha", "d")

    def test_read_invalid_utf8_is_replaced(self, wt, root):
        with open(os.path.join(root, "bin.dat"), "wb") as fh:
            fh.write(b"ok\xff")
        assert wt.read_file("alpha", "bin.dat")["content"] == "ok\ufffd"


class TestDeleteAndMkdir:
    def test_delete_file(self, wt, root):
        wt.write_file("alpha", "f.txt", "x")
        assert wt.delete_path("alpha", "f.txt")["message"] == "File deleted successfully"
        assert not os.path.exists(os.path.join(root, "f.txt"))

    def test_delete_directory_recursively(self, wt, root):
        wt.write_file("alpha", "d/e/f.txt", "x", create_directories=True)
        assert wt.delete_path("alpha", "d")["message"] == "Directory deleted successfully"
        assert not os.path.exists(os.path.join(root, "d"))

    def test_delete_missing(self, wt, root):
        with pytest.raises(NotFound):
            wt.delete_path("alpha", "nothing")

    def test_delete_root_refused(self, wt, root):
        with pytest.raises(AccessDenied):
            wt.delete_path("alpha", ".")
        assert os.path.isdir(root)

    def test_delete_escape_denied(self, wt, root):
        with pytest.raises(AccessDenied):
            wt.delete_path("alpha", "../alpha")

    def test_mkdir_recursive_and_repeatable(self, wt, root):
        wt.make_directory("alpha", "a/b/c")
        result = wt.make_directory("alpha", "a/b/c")
        assert result["path"] == os.path.join("a", "b", "c")
        assert os.path.isdir(os.path.join(root, "a", "b", "c"))

    def test_mkdir_escape_denied(self, wt, root):
        with pytest.raises(AccessDenied):
            wt.make_directory("alpha", "../../tmp-owned")


# =====================================================================
# Upload
# =====================================================================

class TestUpload:
    def test_plain_file_written_verbatim(self, wt, root):
        result = wt.upload_files("alpha", [("notes.bin", b"\x00\x01raw")], "incoming")
        assert result["files"][0] == {
            "name": "notes.bin",
            "type": "file",
            "path": os.path.join("incoming", "notes.bin"),
            "size": 5,
        }
        with open(os.path.join(root, "incoming", "notes.bin"), "rb") as fh:
            assert fh.read() == b"\x00\x01raw"

    def test_filename_directories_are_stripped(self, wt, root):
        wt.upload_files("alpha", [("../../evil.txt", b"x")])
        assert os.path.isfile(os.path.join(root, "evil.txt"))

    def test_zip_extracted_into_stem_directory(self, wt, root):
        data = _zip_bytes({"index.js": "console.log(1)", "lib/util.js": "//"})
        result = wt.upload_files("alpha", [("site.zip", data)])
        outcome = result["files"][0]
        assert outcome["type"] == "archive"
        assert outcome["extracted"] is True
        assert outcome["extractPath"] == "site"
        assert os.path.isfile(os.path.join(root, "site", "lib", "util.js"))

    def test_zip_overwrites_existing_entries(self, wt, root):
        os.makedirs(os.path.join(root, "site"))
        with open(os.path.join(root, "site", "index.js"), "w") as fh:
            fh.write("old")
        wt.upload_files("alpha", [("site.zip", _zip_bytes({"index.js": "new"}))])
        with open(os.path.join(root, "site", "index.js")) as fh:
            assert fh.read() == "new"

    def test_zip_with_escaping_member_rejected(self, wt, root, _servers_root):
        data = _zip_bytes({"../../escaped.txt": "x"})
        result = wt.upload_files("alpha", [("bad.zip", data)])
        assert "Failed to extract ZIP" in result["files"][0]["error"]
        assert not os.path.exists(os.path.join(_servers_root, "escaped.txt"))

    def test_corrupt_zip_reported_per_file(self, wt, root):
        result = wt.upload_files(
            "alpha", [("broken.zip", b"not a zip"), ("ok.txt", b"fine")]
        )
        broken, ok = result["files"]
        assert broken["error"].startswith("Failed to extract ZIP")
        assert ok["path"] == "ok.txt"
        assert result["message"] == "Uploaded 2 file(s)"

    def test_no_files(self, wt, root):
        with pytest.raises(ValidationError):
            wt.upload_files("alpha", [])

    def test_target_escape_denied(self, wt, root):
        with pytest.raises(AccessDenied):
            wt.upload_files("alpha", [("a.txt", b"x")], "../beta")
