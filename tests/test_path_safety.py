"""
Tests for path safety validation.

Tests the shared path_safety module and the tar extraction that relies on it.
"""
from __future__ import annotations

import io
import tarfile

import pytest

from ocipkg.errors import FormatError
from ocipkg.path_safety import safe_relpath
from ocipkg.tarball import extract_tar


def _tar_with_member(name: str, linkname: str = "", kind: bytes = tarfile.REGTYPE) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        info = tarfile.TarInfo(name)
        info.type = kind
        info.linkname = linkname
        data = b"" if kind != tarfile.REGTYPE else b"evil"
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class TestSafeRelpath:
    """Test safe_relpath function directly."""

    def test_safe_paths_allowed(self):
        """Test that safe relative paths are allowed."""
        assert safe_relpath("file.txt") == "file.txt"
        assert safe_relpath("lib/libfoo.a") == "lib/libfoo.a"
        assert safe_relpath("deep/nested/path/file.txt") == "deep/nested/path/file.txt"

    def test_dot_slash_prefix_stripped(self):
        """Test image builders' "./" prefixes are normalized away."""
        assert safe_relpath("./etc/alpine-release") == "etc/alpine-release"
        assert safe_relpath("././bin/sh") == "bin/sh"

    def test_absolute_paths_rejected(self):
        """Test that absolute paths are rejected."""
        with pytest.raises(FormatError, match="unsafe path: /etc/passwd"):
            safe_relpath("/etc/passwd")

    def test_parent_directory_traversal_rejected(self):
        """Test that parent directory traversal is rejected."""
        with pytest.raises(FormatError, match="unsafe path: ../evil.txt"):
            safe_relpath("../evil.txt")

        with pytest.raises(FormatError, match="unsafe path: dir/../../evil.txt"):
            safe_relpath("dir/../../evil.txt")

    def test_empty_and_dot_rejected(self):
        """Test that empty paths and "." are rejected."""
        for path in ["", ".", "./"]:
            with pytest.raises(FormatError):
                safe_relpath(path)

    def test_backslash_and_nul_rejected(self):
        with pytest.raises(FormatError):
            safe_relpath("dir\\file.txt")
        with pytest.raises(FormatError):
            safe_relpath("file\x00.txt")

    def test_unicode_normalized_to_nfc(self):
        """Test decomposed unicode is normalized to NFC."""
        assert safe_relpath("cafe\u0301.txt") == "caf\u00e9.txt"


class TestExtractionSafety:
    """Test that layer extraction refuses to escape the destination."""

    def test_parent_traversal_member_rejected(self, tmp_path):
        """Test "../" members are refused before anything is written."""
        dest = tmp_path / "dest"
        with pytest.raises(FormatError):
            extract_tar(_tar_with_member("../evil.txt"), dest)
        assert not (tmp_path / "evil.txt").exists()

    def test_hardlink_out_of_tree_rejected(self, tmp_path):
        """Test hard links pointing outside the tree are refused."""
        with pytest.raises(FormatError):
            extract_tar(_tar_with_member("link", linkname="../../etc/passwd", kind=tarfile.LNKTYPE),
                        tmp_path / "dest")

    def test_leading_slash_is_stripped(self, tmp_path):
        """Test absolute member names are unpacked relative to the destination."""
        dest = tmp_path / "dest"
        extract_tar(_tar_with_member("/abs.txt"), dest)
        assert (dest / "abs.txt").read_bytes() == b"evil"
