"""Image archive downloads.

Two interchangeable backends:
    - "aiohttp": in-process HTTP client with connect/read timeouts
    - "command": curl or wget, whichever is found on PATH

Both raise TransferError for unreachable hosts, timeouts and non-200
responses, and never leave a partial file behind.
"""

from __future__ import annotations

import asyncio
import shutil
import subprocess
from pathlib import Path

import aiohttp

from rpi_chroot.logging import LoggerFactory
from rpi_chroot.storage.exceptions import TransferError


log = LoggerFactory.for_download()

BACKENDS = ("aiohttp", "command")
CHUNK_SIZE = 1024 * 1024


def fetch(
    url: str,
    destination: Path,
    *,
    timeout: float = 30.0,
    backend: str = "aiohttp",
) -> Path:
    """Download ``url`` to ``destination``.

    Args:
        url: HTTP(S) URL of the archive
        destination: File to write
        timeout: Connect and read timeout in seconds
        backend: "aiohttp" or "command"

    Returns:
        The destination path

    Raises:
        TransferError: Download failed
        ValueError: Unknown backend
    """
    if backend not in BACKENDS:
        raise ValueError(f"Unknown download backend: {backend}")
    destination = Path(destination)
    log.info(f"Downloading {url} via {backend}")
    try:
        if backend == "aiohttp":
            asyncio.run(_fetch_aiohttp(url, destination, timeout))
        else:
            _fetch_command(url, destination, timeout)
    except TransferError:
        destination.unlink(missing_ok=True)
        raise
    log.info(f"Downloaded {destination.stat().st_size} bytes to {destination}")
    return destination


async def _fetch_aiohttp(url: str, destination: Path, timeout: float) -> None:
    client_timeout = aiohttp.ClientTimeout(
        total=None, sock_connect=timeout, sock_read=timeout
    )
    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url) as resp:
                if resp.status != 200:
                    raise TransferError(url, f"HTTP status {resp.status}")
                with open(destination, "wb") as handle:
                    async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                        handle.write(chunk)
    except asyncio.TimeoutError as e:
        log.error(f"Timed out downloading {url}")
        raise TransferError(url, "timed out") from e
    except aiohttp.ClientError as e:
        log.error(f"Network error downloading {url}: {e}")
        raise TransferError(url, f"network error: {e}") from e


def command_for(url: str, destination: Path, timeout: float) -> list[str]:
    """Build a curl or wget command line, preferring curl."""
    seconds = str(int(timeout))
    curl = shutil.which("curl")
    if curl:
        return [
            curl,
            "--fail",
            "--location",
            "--silent",
            "--show-error",
            "--connect-timeout",
            seconds,
            "--speed-limit",
            "1",
            "--speed-time",
            seconds,
            "--output",
            str(destination),
            url,
        ]
    wget = shutil.which("wget")
    if wget:
        return [
            wget,
            "--quiet",
            f"--timeout={seconds}",
            "--tries=1",
            f"--output-document={destination}",
            url,
        ]
    raise TransferError(url, "neither curl nor wget is installed")


def _fetch_command(url: str, destination: Path, timeout: float) -> None:
    command = command_for(url, destination, timeout)
    log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(command, capture_output=True, text=True)
    if result.returncode != 0:
        message = (result.stderr or "").strip() or f"exit code {result.returncode}"
        log.error(f"Download command failed: {message}")
        raise TransferError(url, message)
