"""Tests for services/download.py - archive download backends."""

import asyncio
import subprocess
from unittest.mock import MagicMock, patch

import aiohttp
import pytest

from rpi_chroot.services import download
from rpi_chroot.storage.exceptions import TransferError


URL = "https://example.invalid/raspbian.zip"


def _which(*available):
    return lambda name: f"/usr/bin/{name}" if name in available else None


class TestCommandFor:
    """Tests for command_for()."""

    def test_prefers_curl(self, tmp_path):
        with patch("rpi_chroot.services.download.shutil.which", side_effect=_which("curl", "wget")):
            command = download.command_for(URL, tmp_path / "a.zip", 30.0)

        assert command[0] == "/usr/bin/curl"
        assert "--fail" in command
        assert command[command.index("--connect-timeout") + 1] == "30"
        assert command[-1] == URL

    def test_falls_back_to_wget(self, tmp_path):
        with patch("rpi_chroot.services.download.shutil.which", side_effect=_which("wget")):
            command = download.command_for(URL, tmp_path / "a.zip", 12.5)

        assert command[0] == "/usr/bin/wget"
        assert "--timeout=12" in command
        assert f"--output-document={tmp_path / 'a.zip'}" in command

    def test_no_tool_available(self, tmp_path):
        with patch("rpi_chroot.services.download.shutil.which", return_value=None):
            with pytest.raises(TransferError, match="neither curl nor wget"):
                download.command_for(URL, tmp_path / "a.zip", 30.0)


class TestFetchCommand:
    """Tests for the command backend."""

    def test_failure_removes_partial_file(self, tmp_path):
        destination = tmp_path / "a.zip"
        destination.write_bytes(b"partial")
        failed = subprocess.CompletedProcess([], 22, stdout="", stderr="404 Not Found")

        with patch("rpi_chroot.services.download.shutil.which", side_effect=_which("curl")):
            with patch("rpi_chroot.services.download.subprocess.run", return_value=failed):
                with pytest.raises(TransferError, match="404"):
                    download.fetch(URL, destination, backend="command")

        assert not destination.exists()

    def test_success(self, tmp_path):
        destination = tmp_path / "a.zip"

        def fake_run(command, **kwargs):
            destination.write_bytes(b"zipdata")
            return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

        with patch("rpi_chroot.services.download.shutil.which", side_effect=_which("curl")):
            with patch("rpi_chroot.services.download.subprocess.run", side_effect=fake_run):
                result = download.fetch(URL, destination, backend="command")

        assert result == destination
        assert destination.read_bytes() == b"zipdata"


class TestFetchAiohttp:
    """Tests for the aiohttp backend."""

    def test_unknown_backend(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown download backend"):
            download.fetch(URL, tmp_path / "a.zip", backend="ftp")

    def test_connection_error(self, tmp_path):
        destination = tmp_path / "a.zip"
        with patch("rpi_chroot.services.download.aiohttp.ClientSession") as session_cls:
            session_cls.return_value.__aenter__.side_effect = aiohttp.ClientConnectionError(
                "refused"
            )
            with pytest.raises(TransferError, match="network error"):
                download.fetch(URL, destination)

        assert not destination.exists()

    def test_timeout(self, tmp_path):
        with patch("rpi_chroot.services.download.aiohttp.ClientSession") as session_cls:
            session_cls.return_value.__aenter__.side_effect = asyncio.TimeoutError()
            with pytest.raises(TransferError, match="timed out"):
                download.fetch(URL, tmp_path / "a.zip", timeout=1.0)

    def test_timeout_configuration(self, tmp_path):
        with patch("rpi_chroot.services.download.aiohttp.ClientSession") as session_cls:
            session_cls.return_value.__aenter__.side_effect = asyncio.TimeoutError()
            with pytest.raises(TransferError):
                download.fetch(URL, tmp_path / "a.zip", timeout=7.0)

        client_timeout = session_cls.call_args.kwargs["timeout"]
        assert client_timeout.sock_connect == 7.0
        assert client_timeout.sock_read == 7.0
        assert client_timeout.total is None

    def test_http_error_status(self, tmp_path):
        destination = tmp_path / "a.zip"
        resp = MagicMock(status=404)
        with patch("rpi_chroot.services.download.aiohttp.ClientSession") as session_cls:
            session = session_cls.return_value.__aenter__.return_value
            session.get = MagicMock()
            session.get.return_value.__aenter__.return_value = resp
            with pytest.raises(TransferError, match="HTTP status 404"):
                download.fetch(URL, destination)

        assert not destination.exists()

    def test_writes_chunks(self, tmp_path):
        destination = tmp_path / "a.zip"
        resp = MagicMock(status=200)
        resp.content.iter_chunked.return_value.__aiter__.return_value = [b"ab", b"cd"]
        with patch("rpi_chroot.services.download.aiohttp.ClientSession") as session_cls:
            session = session_cls.return_value.__aenter__.return_value
            session.get = MagicMock()
            session.get.return_value.__aenter__.return_value = resp
            download.fetch(URL, destination)

        assert destination.read_bytes() == b"abcd"
        resp.content.iter_chunked.assert_called_once_with(download.CHUNK_SIZE)
