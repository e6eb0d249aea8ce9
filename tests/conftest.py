import shutil
import tarfile

import pytest

from crossbuild import Fetcher, RecipeExecutor, ensure_install_tree, resolve_target


@pytest.fixture
def profile(tmp_path):
    """64-bit profile rooted in the temporary directory"""
    return resolve_target(
        "64-bit", prefix=tmp_path / "install", sysroot=tmp_path / "sysroot"
    )


@pytest.fixture
def fetcher(tmp_path):
    return Fetcher(tmp_path / "downloads", tmp_path / "src")


@pytest.fixture
def executor(tmp_path, profile, fetcher):
    ensure_install_tree(profile)
    return RecipeExecutor(fetcher, variables={"root": str(tmp_path), "jobs": "1"})


@pytest.fixture
def make_tarball(tmp_path):
    """build a .tar.gz whose single top-level folder is `topdir`"""

    def _make(name="demo-1.0.tar.gz", topdir="demo-1.0", files=None):
        files = files or {"configure": "#!/bin/sh\n", "README": "demo\n"}
        staging = tmp_path / "tarball-staging" / topdir
        staging.mkdir(parents=True)
        for fname, content in files.items():
            (staging / fname).write_text(content)
        archive = tmp_path / "remote" / name
        archive.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(staging, arcname=topdir)
        shutil.rmtree(staging.parent)
        return archive

    return _make


def serve(archive):
    """urlretrieve replacement copying a local archive"""

    def _retrieve(url, filename):
        shutil.copy(archive, filename)
        return str(filename), None

    return _retrieve
