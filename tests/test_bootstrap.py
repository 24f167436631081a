"""Tests for root filesystem population."""

import subprocess

import pytest

from vm_image_builder.exceptions import BootstrapError
from vm_image_builder.rootfs import bootstrap
from vm_image_builder.rootfs.bootstrap import APT_ENV, RootPopulator, in_chroot


@pytest.fixture
def mock_stream(mocker):
    return mocker.patch.object(bootstrap, "stream_command")


@pytest.fixture
def tree(tmp_path):
    """A root tree with a shell, enough to enter the chroot."""
    root = tmp_path / "root"
    (root / "usr" / "bin").mkdir(parents=True)
    (root / "usr" / "bin" / "sh").write_text("")
    return root


class TestBootstrap:
    """Test debootstrap invocation."""

    def test_runs_debootstrap(self, mock_stream, tmp_path):
        RootPopulator().bootstrap(tmp_path, "bookworm", "http://deb.debian.org/debian")
        mock_stream.assert_called_once_with(
            [
                "debootstrap",
                "--arch=amd64",
                "bookworm",
                str(tmp_path),
                "http://deb.debian.org/debian",
            ]
        )

    def test_missing_target(self, mock_stream, tmp_path):
        with pytest.raises(BootstrapError, match="does not exist"):
            RootPopulator().bootstrap(tmp_path / "missing", "bookworm", "http://mirror")
        mock_stream.assert_not_called()

    def test_debootstrap_failure(self, mock_stream, tmp_path):
        mock_stream.side_effect = subprocess.CalledProcessError(
            1, ["debootstrap"], output="E: Failed getting release file"
        )
        with pytest.raises(BootstrapError, match="Failed getting release file"):
            RootPopulator().bootstrap(tmp_path, "nosuchrelease", "http://mirror")

    def test_debootstrap_not_installed(self, mock_stream, tmp_path):
        mock_stream.side_effect = FileNotFoundError("debootstrap")
        with pytest.raises(BootstrapError):
            RootPopulator().bootstrap(tmp_path, "bookworm", "http://mirror")


class TestInstallPackages:
    """Test package installation inside the chroot."""

    def test_in_chroot(self, tmp_path):
        assert in_chroot(tmp_path, ["true"]) == ["chroot", str(tmp_path), "true"]

    def test_installs_sorted_unique_packages(self, mock_stream, tree):
        RootPopulator().install_packages(tree, ["zsh", "cloud-init", "zsh"])
        mock_stream.assert_called_once_with(
            ["chroot", str(tree), "apt-get", "install", "-y", "cloud-init", "zsh"],
            env=APT_ENV,
        )

    def test_apt_is_non_interactive(self):
        assert APT_ENV["DEBIAN_FRONTEND"] == "noninteractive"

    def test_empty_package_set(self, mock_stream, tmp_path):
        RootPopulator().install_packages(tmp_path, [])
        mock_stream.assert_not_called()

    def test_tree_without_shell(self, mock_stream, tmp_path):
        with pytest.raises(BootstrapError, match="no /bin/sh"):
            RootPopulator().install_packages(tmp_path, ["zsh"])
        mock_stream.assert_not_called()

    def test_apt_failure(self, mock_stream, tree):
        mock_stream.side_effect = subprocess.CalledProcessError(
            100, ["chroot"], output="E: Unable to locate package nosuchpkg"
        )
        with pytest.raises(BootstrapError, match="Unable to locate package"):
            RootPopulator().install_packages(tree, ["nosuchpkg"])
