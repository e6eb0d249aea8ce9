import hashlib
import logging
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from conftest import serve
from crossbuild import (
    DependencyDescriptor,
    FetchError,
    Fetcher,
    UnpackError,
    ValidationError,
)


@pytest.fixture
def demo():
    return DependencyDescriptor("demo", "1.0", "https://example.com/src/{archive}")


class TestDescriptor:
    def test_archive_and_url(self, demo):
        assert demo.archive == "demo-1.0.tar.gz"
        assert demo.url == "https://example.com/src/demo-1.0.tar.gz"
        assert demo.dirname == "demo-1.0"

    def test_url_with_version(self):
        desc = DependencyDescriptor(
            "mpfr", "4.2.1", "https://www.mpfr.org/mpfr-{ver}/{archive}", kind="tar.xz"
        )
        assert desc.url == "https://www.mpfr.org/mpfr-4.2.1/mpfr-4.2.1.tar.xz"

    def test_pinned(self):
        desc = DependencyDescriptor("gmp", "6.3.0", "https://x/{archive}", checksum="abc")
        pinned = desc.pinned("6.2.1")
        assert pinned.version == "6.2.1"
        assert pinned.checksum is None
        assert desc.version == "6.3.0"
        assert desc.pinned(None) is desc
        assert desc.pinned("6.3.0") is desc

    def test_empty_version_invalid(self):
        desc = DependencyDescriptor("demo", "", "https://x/{archive}")
        with pytest.raises(ValidationError):
            desc.validate()


class TestEnsure:
    def test_fetch_and_unpack(self, fetcher, demo, make_tarball):
        archive = make_tarball()
        with patch("crossbuild.urlretrieve", side_effect=serve(archive)) as mock_retrieve:
            src_dir = fetcher.ensure(demo)
        mock_retrieve.assert_called_once()
        assert mock_retrieve.call_args[0][0] == demo.url
        assert src_dir == fetcher.src / "demo-1.0"
        assert (src_dir / "README").read_text() == "demo\n"
        assert fetcher.archive_path(demo).is_file()

    def test_second_call_does_no_work(self, fetcher, demo, make_tarball):
        archive = make_tarball()
        with patch("crossbuild.urlretrieve", side_effect=serve(archive)) as mock_retrieve:
            first = fetcher.ensure(demo)
            with patch.object(fetcher, "extract") as mock_extract:
                second = fetcher.ensure(demo)
                mock_extract.assert_not_called()
        assert first == second
        assert mock_retrieve.call_count == 1

    def test_cached_archive_skips_download(self, fetcher, demo, make_tarball):
        archive = make_tarball()
        fetcher.downloads.mkdir(parents=True)
        (fetcher.downloads / demo.archive).write_bytes(archive.read_bytes())
        with patch("crossbuild.urlretrieve") as mock_retrieve:
            src_dir = fetcher.ensure(demo)
        mock_retrieve.assert_not_called()
        assert src_dir.is_dir()

    def test_cached_archive_with_bad_checksum_is_refetched(self, fetcher, make_tarball):
        archive = make_tarball()
        digest = hashlib.sha256(archive.read_bytes()).hexdigest()
        desc = DependencyDescriptor(
            "demo", "1.0", "https://example.com/{archive}", checksum=digest
        )
        fetcher.downloads.mkdir(parents=True)
        (fetcher.downloads / desc.archive).write_bytes(b"truncated")
        with patch("crossbuild.urlretrieve", side_effect=serve(archive)) as mock_retrieve:
            src_dir = fetcher.ensure(desc)
        mock_retrieve.assert_called_once()
        assert (src_dir / "configure").is_file()

    def test_checksum_mismatch_after_download(self, fetcher, make_tarball):
        archive = make_tarball()
        desc = DependencyDescriptor(
            "demo", "1.0", "https://example.com/{archive}", checksum="0" * 64
        )
        with patch("crossbuild.urlretrieve", side_effect=serve(archive)):
            with pytest.raises(FetchError, match="Checksum"):
                fetcher.ensure(desc)
        assert not fetcher.archive_path(desc).exists()

    def test_download_failure(self, fetcher, demo):
        with patch("crossbuild.urlretrieve", side_effect=OSError("no route to host")):
            with pytest.raises(FetchError, match="no route to host"):
                fetcher.ensure(demo)
        assert not fetcher.source_dir(demo).exists()
        assert not fetcher.archive_path(demo).exists()

    def test_corrupt_archive(self, fetcher, demo, tmp_path):
        bad = tmp_path / "remote" / "demo-1.0.tar.gz"
        bad.parent.mkdir(parents=True)
        bad.write_bytes(b"this is not an archive")
        with patch("crossbuild.urlretrieve", side_effect=serve(bad)):
            with pytest.raises(UnpackError):
                fetcher.ensure(demo)
        assert not fetcher.source_dir(demo).exists()
        assert list(fetcher.src.iterdir()) == []

    def test_top_level_folder_renamed(self, fetcher, demo, make_tarball):
        archive = make_tarball(topdir="demo-release")
        with patch("crossbuild.urlretrieve", side_effect=serve(archive)):
            src_dir = fetcher.ensure(demo)
        assert src_dir.name == "demo-1.0"
        assert (src_dir / "README").is_file()
        assert not (fetcher.src / "demo-release").exists()

    def test_invalid_descriptor_does_no_work(self, fetcher):
        desc = DependencyDescriptor("", "1.0", "https://x/{archive}")
        with patch("crossbuild.urlretrieve") as mock_retrieve:
            with pytest.raises(ValidationError):
                fetcher.ensure(desc)
        mock_retrieve.assert_not_called()


class TestShellCmdHelpers:
    @pytest.fixture
    def shell(self, tmp_path):
        fetcher = Fetcher(tmp_path / "d", tmp_path / "s")
        fetcher.log = Mock(spec=logging.Logger)
        return fetcher

    def test_extract_unsupported(self, shell, tmp_path):
        plain = tmp_path / "plain.txt"
        plain.write_text("hello")
        with pytest.raises(UnpackError, match="Unsupported"):
            shell.extract(plain, tmp_path / "out")

    def test_extract_missing(self, shell, tmp_path):
        with pytest.raises(UnpackError, match="not found"):
            shell.extract(tmp_path / "missing.tar.gz", tmp_path)

    def test_validate_checksum(self, shell, tmp_path):
        f = tmp_path / "data.bin"
        f.write_bytes(b"abc")
        digest = hashlib.sha256(b"abc").hexdigest()
        assert shell._validate_checksum(f, digest)
        assert shell._validate_checksum(f, digest.upper())
        assert not shell._validate_checksum(f, "0" * 64)

    def test_remove_missing_file_is_silent(self, shell, tmp_path):
        shell.remove(tmp_path / "nothing-here")
        shell.remove(Path(tmp_path / "nothing-here"), silent=True)
