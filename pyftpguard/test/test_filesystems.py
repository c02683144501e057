# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import os

import pytest

from pyftpguard.exceptions import FilesystemError
from pyftpguard.exceptions import PathEscapeError
from pyftpguard.filesystems import AbstractedFS
from pyftpguard.filesystems import FileInfo
from pyftpguard.filesystems import is_valid_filename

from . import POSIX
from . import PyftpguardTestCase
from . import safe_rmpath
from . import touch


class TestAbstractedFS(PyftpguardTestCase):
    """Test for conversion utility methods of AbstractedFS class."""

    def setUp(self):
        super().setUp()
        self.root = self.get_testdir()
        self.fs = AbstractedFS(self.root)

    def test_ftpnorm(self):
        ae = self.assertEqual
        fs = self.fs
        ae(fs.ftpnorm("/", ""), "/")
        ae(fs.ftpnorm("/", "/"), "/")
        ae(fs.ftpnorm("/", "."), "/")
        ae(fs.ftpnorm("/", "a"), "/a")
        ae(fs.ftpnorm("/", "/a"), "/a")
        ae(fs.ftpnorm("/", "/a/"), "/a")
        ae(fs.ftpnorm("/", "a/.."), "/")
        ae(fs.ftpnorm("/", "a/b"), "/a/b")
        ae(fs.ftpnorm("/", "a/b/.."), "/a")
        ae(fs.ftpnorm("/", "a/b/../.."), "/")
        ae(fs.ftpnorm("/sub", ""), "/sub")
        ae(fs.ftpnorm("/sub", "/"), "/")
        ae(fs.ftpnorm("/sub", "."), "/sub")
        ae(fs.ftpnorm("/sub", ".."), "/")
        ae(fs.ftpnorm("/sub", "a"), "/sub/a")
        ae(fs.ftpnorm("/sub", "a/"), "/sub/a")
        ae(fs.ftpnorm("/sub", "a/b/../.."), "/sub")
        ae(fs.ftpnorm("/sub", "a/b/../../.."), "/")
        ae(fs.ftpnorm("/", "//"), "/")  # UNC paths must be collapsed
        ae(fs.ftpnorm("/", "//a"), "/a")

    def test_ftpnorm_escape(self):
        fs = self.fs
        for path in ("..", "../a", "/..", "a/../..", "/a/b/../../.."):
            with pytest.raises(PathEscapeError):
                fs.ftpnorm("/", path)
        with pytest.raises(PathEscapeError):
            fs.ftpnorm("/sub", "../..")
        # PathEscapeError is a FilesystemError
        with pytest.raises(FilesystemError):
            fs.ftpnorm("/", "..")

    def test_ftp2fs(self):
        ae = self.assertEqual
        fs = self.fs
        root = self.root
        ae(fs.ftp2fs("/"), root)
        ae(fs.ftp2fs(""), root)
        ae(fs.ftp2fs("/a"), os.path.join(root, "a"))
        ae(fs.ftp2fs("/a/b"), os.path.join(root, "a", "b"))

    def test_fs2ftp(self):
        ae = self.assertEqual
        fs = self.fs
        root = self.root
        ae(fs.fs2ftp(root), "/")
        ae(fs.fs2ftp(os.path.join(root, "a")), "/a")
        ae(fs.fs2ftp(os.path.join(root, "a", "b")), "/a/b")
        # paths outside of root are clamped
        ae(fs.fs2ftp(os.path.dirname(root)), "/")
        ae(fs.fs2ftp(os.path.join(root, "..", "x")), "/")

    def test_validpath(self):
        fs = self.fs
        root = self.root
        assert fs.validpath(root)
        assert fs.validpath(os.path.join(root, "a"))
        assert not fs.validpath(os.path.dirname(root))
        # a sibling sharing the same prefix is not inside root
        assert not fs.validpath(root + "-other")

    def test_resolve_safe(self):
        fs = self.fs
        root = self.root
        assert fs.resolve_safe("/", "a") == os.path.join(root, "a")
        assert fs.resolve_safe("/a", "../b") == os.path.join(root, "b")
        with pytest.raises(PathEscapeError):
            fs.resolve_safe("/", "../x")

    @pytest.mark.skipif(not POSIX, reason="POSIX only")
    def test_resolve_safe_symlink(self):
        fs = self.fs
        outside = self.get_testdir()
        os.symlink(outside, os.path.join(self.root, "link"))
        with pytest.raises(PathEscapeError):
            fs.resolve_safe("/", "link")
        with pytest.raises(PathEscapeError):
            fs.resolve_safe("/", "link/file")
        # a link pointing inside root is fine
        os.mkdir(os.path.join(self.root, "dir"))
        os.symlink(
            os.path.join(self.root, "dir"), os.path.join(self.root, "inlink")
        )
        assert fs.resolve_safe("/", "inlink") == os.path.join(
            self.root, "inlink"
        )

    def test_get_info(self):
        fs = self.fs
        touch(os.path.join(self.root, "file"), b"hello")
        os.mkdir(os.path.join(self.root, "dir"))
        info = fs.get_info(os.path.join(self.root, "file"))
        assert info.name == "file"
        assert info.size == 5
        assert not info.isdir
        info = fs.get_info(os.path.join(self.root, "dir"))
        assert info.isdir
        assert info.size == 0
        assert fs.get_info(os.path.join(self.root, "nothere")) is None

    def test_list_directory(self):
        fs = self.fs
        for name in ("b", "a", "c"):
            touch(os.path.join(self.root, name))
        names = [x.name for x in fs.list_directory(self.root)]
        assert names == ["a", "b", "c"]


class TestListingFormats(PyftpguardTestCase):
    def setUp(self):
        super().setUp()
        self.root = self.get_testdir()
        self.fs = AbstractedFS(self.root)
        touch(os.path.join(self.root, "file"), b"x" * 10)
        os.mkdir(os.path.join(self.root, "dir"))

    def test_format_list(self):
        lines = list(self.fs.format_list(self.root, ["dir", "file"]))
        assert len(lines) == 2
        for line in lines:
            assert line.endswith(b"\r\n")
        assert lines[0].startswith(b"d")
        assert lines[0].rstrip().endswith(b" dir")
        assert lines[1].startswith(b"-")
        assert b" 10 " in lines[1]
        assert lines[1].rstrip().endswith(b" file")

    def test_format_list_missing_entry(self):
        lines = list(self.fs.format_list(self.root, ["nothere", "file"]))
        assert len(lines) == 1
        with pytest.raises(OSError):
            list(self.fs.format_list(self.root, ["nothere"], ignore_err=False))

    def test_format_mlsx(self):
        facts = ("type", "size", "modify", "perm")
        infos = self.fs.list_directory(self.root)
        lines = list(self.fs.format_mlsx(infos, "rwd", facts))
        dirline, fileline = (x.decode() for x in lines)
        assert dirline.endswith("; dir\r\n")
        assert "type=dir;" in dirline
        assert "perm=elcfmdp;" in dirline
        assert "size=" not in dirline
        assert fileline.endswith("; file\r\n")
        assert "type=file;" in fileline
        assert "size=10;" in fileline
        assert "perm=rafwd;" in fileline
        # facts are sorted by name
        facts = fileline.split(" ")[0].rstrip(";").split(";")
        names = [x.split("=")[0] for x in facts]
        assert names == sorted(names)

    def test_format_mlsx_perms(self):
        facts = ("type", "perm")
        infos = self.fs.list_directory(self.root)
        lines = list(self.fs.format_mlsx(infos, "r", facts))
        assert lines[0] == b"perm=el;type=dir; dir\r\n"
        assert lines[1] == b"perm=r;type=file; file\r\n"
        info = self.fs.get_info(os.path.join(self.root, "file"))
        lines = list(self.fs.format_mlsx([info], "", facts))
        assert lines[0] == b"perm=;type=file; file\r\n"

    def test_format_mlsx_disk_access(self):
        # a read-only entry never advertises write or delete rights
        facts = ("type", "perm", "size")
        infos = [
            FileInfo(name="ro", size=3, mtime=0, isdir=False, perm="r-"),
            FileInfo(name="rodir", size=0, mtime=0, isdir=True, perm="r-"),
            FileInfo(name="wo", size=3, mtime=0, isdir=False, perm="-w"),
        ]
        lines = list(self.fs.format_mlsx(infos, "rwd", facts))
        assert lines == [
            b"perm=r;size=3;type=file; ro\r\n",
            b"perm=el;type=dir; rodir\r\n",
            b"perm=afwd;size=3;type=file; wo\r\n",
        ]

    def test_use_gmt_times(self):
        class Handler:
            use_gmt_times = False
            encoding = "utf8"
            unicode_errors = "replace"

        fs = AbstractedFS(self.root, Handler())
        assert not fs.use_gmt_times
        assert fs.encoding == "utf8"
        assert AbstractedFS(self.root).use_gmt_times


class TestIsValidFilename(PyftpguardTestCase):
    def test_valid(self):
        for name in ("file", "file.txt", "a b", ".hidden", "con-file.txt",
                     "COM10", "x" * 200, "àèìòù"):  # fmt: skip
            assert is_valid_filename(name), name

    def test_invalid(self):
        for name in ("", " ", ".", "..", "a/b", "a\\b", "a:b", "a*b", "a?b",
                     'a"b', "a<b", "a>b", "a|b", "a\x00b", "a\nb"):  # fmt: skip
            assert not is_valid_filename(name), repr(name)

    def test_reserved_names(self):
        for name in ("CON", "con", "PRN", "AUX", "NUL", "COM1", "lpt9",
                     "con.txt", "NUL.tar.gz"):  # fmt: skip
            assert not is_valid_filename(name), name

    def test_cleanup(self):
        # make sure touch() + safe_rmpath() leave nothing behind
        name = self.get_testfn()
        touch(name)
        safe_rmpath(name)
        assert not os.path.exists(name)
