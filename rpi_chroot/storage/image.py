"""Disk image acquisition and padding.

An installation directory holds exactly one image matching the installation
pattern (default ``*raspbian*.img``). ``acquire`` reuses that image when it
is present, otherwise it downloads (or copies) an archive, extracts the image
member and removes the archive.
"""

from __future__ import annotations

import fnmatch
import os
import shutil
import tempfile
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator

from rpi_chroot.domain import DiskImage
from rpi_chroot.domain.models import DEFAULT_IMAGE_PATTERN
from rpi_chroot.logging import LoggerFactory
from rpi_chroot.services import download
from rpi_chroot.storage.exceptions import (
    AmbiguousImageError,
    ArchiveFormatError,
    ImageNotFoundError,
)


log = LoggerFactory.for_image()

MEBIBYTE = 1024 * 1024
IMAGE_SUFFIX = ".img"
PARTIAL_SUFFIX = ".part"

Fetcher = Callable[[str, Path], Path]


def find_images(directory: Path, pattern: str = DEFAULT_IMAGE_PATTERN) -> list[Path]:
    """List regular files in ``directory`` matching ``pattern``."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and fnmatch.fnmatch(path.name, pattern)
    )


def resolve(directory: Path, pattern: str = DEFAULT_IMAGE_PATTERN) -> DiskImage:
    """Return the single image in ``directory``.

    Raises:
        ImageNotFoundError: No image matches
        AmbiguousImageError: More than one image matches
    """
    matches = find_images(directory, pattern)
    if not matches:
        raise ImageNotFoundError(directory, pattern)
    if len(matches) > 1:
        raise AmbiguousImageError(directory, matches)
    return DiskImage(path=matches[0])


def is_remote(source_ref: str) -> bool:
    return source_ref.startswith(("http://", "https://"))


def acquire(
    source_ref: str | None,
    destination_dir: Path,
    *,
    pattern: str = DEFAULT_IMAGE_PATTERN,
    scratch_dir: Path | None = None,
    fetcher: Fetcher | None = None,
) -> DiskImage:
    """Resolve the installation image, downloading it when missing.

    Args:
        source_ref: URL of a zip archive, or a local .zip/.img path
        destination_dir: Installation directory
        pattern: Image name pattern identifying the installation's image
        scratch_dir: Directory for the temporary archive
        fetcher: Download callable ``(url, path) -> path``; defaults to
            :func:`rpi_chroot.services.download.fetch`

    Raises:
        AmbiguousImageError: Several images already present
        TransferError: Download failed
        ArchiveFormatError: Archive holds no image
        ImageNotFoundError: No source given and no image present
    """
    destination_dir = Path(destination_dir)
    existing = find_images(destination_dir, pattern)
    if len(existing) > 1:
        raise AmbiguousImageError(destination_dir, existing)
    if existing:
        log.info(f"Reusing existing image {existing[0]}")
        return DiskImage(path=existing[0])
    if not source_ref:
        raise ImageNotFoundError(destination_dir, pattern)

    destination_dir.mkdir(parents=True, exist_ok=True)

    if is_remote(source_ref):
        fetcher = fetcher or download.fetch
        if scratch_dir is not None:
            Path(scratch_dir).mkdir(parents=True, exist_ok=True)
        handle, archive_name = tempfile.mkstemp(
            prefix="rpi-chroot-", suffix=".zip", dir=scratch_dir
        )
        os.close(handle)
        archive = Path(archive_name)
        try:
            fetcher(source_ref, archive)
            image_path = extract_image(archive, destination_dir, pattern)
        finally:
            archive.unlink(missing_ok=True)
        return DiskImage(path=image_path)

    source = Path(source_ref).expanduser()
    if not source.is_file():
        raise ImageNotFoundError(source.parent, source.name)
    if source.suffix == IMAGE_SUFFIX:
        target = destination_dir / _installation_name(source.name, pattern)
        log.info(f"Copying image {source} to {target}")
        with _partial(target) as part:
            shutil.copyfile(source, part)
        return DiskImage(path=target)
    return DiskImage(path=extract_image(source, destination_dir, pattern))


def select_member(names: list[str], pattern: str = DEFAULT_IMAGE_PATTERN) -> str | None:
    """Pick the disk image member from an archive listing."""
    images = [
        name
        for name in names
        if not name.endswith("/") and name.lower().endswith(IMAGE_SUFFIX)
    ]
    preferred = [name for name in images if fnmatch.fnmatch(Path(name).name, pattern)]
    candidates = preferred or images
    if len(candidates) != 1:
        return None
    return candidates[0]


def extract_image(archive: Path, destination_dir: Path, pattern: str) -> Path:
    """Extract the image member of ``archive`` into ``destination_dir``.

    Raises:
        ArchiveFormatError: Not a zip file, or no single image member
    """
    archive = Path(archive)
    try:
        with zipfile.ZipFile(archive) as bundle:
            names = bundle.namelist()
            member = select_member(names, pattern)
            if member is None:
                images = [name for name in names if name.lower().endswith(IMAGE_SUFFIX)]
                reason = (
                    f"multiple disk image members: {', '.join(images)}"
                    if images
                    else "no disk image member found"
                )
                raise ArchiveFormatError(archive, reason)
            target = destination_dir / _installation_name(Path(member).name, pattern)
            log.info(f"Extracting {member} from {archive.name} to {target}")
            with _partial(target) as part:
                with bundle.open(member) as src, open(part, "wb") as dst:
                    shutil.copyfileobj(src, dst, MEBIBYTE)
    except zipfile.BadZipFile as exc:
        raise ArchiveFormatError(archive, f"not a zip archive: {exc}") from exc
    return target


@contextmanager
def _partial(target: Path) -> Generator[Path, None, None]:
    """Yield a temporary sibling of ``target``, renamed onto it on success.

    The temporary name never matches an image pattern, so an interrupted
    copy is not mistaken for a complete image on the next run.
    """
    part = target.with_name(target.name + PARTIAL_SUFFIX)
    try:
        yield part
    except BaseException:
        part.unlink(missing_ok=True)
        raise
    os.replace(part, target)


def _installation_name(name: str, pattern: str) -> str:
    """Rename images that would not be found again by ``pattern``."""
    if fnmatch.fnmatch(name, pattern):
        return name
    return f"{Path(name).stem}-raspbian{IMAGE_SUFFIX}"


def pad(image: DiskImage, megabytes: int) -> None:
    """Append ``megabytes`` MiB of zeros to the image in place.

    Silently does nothing when the image does not exist.
    """
    if megabytes < 0:
        raise ValueError("Cannot pad by a negative size")
    if not image.exists:
        log.debug(f"Not padding missing image {image.path}")
        return
    pad_to(image, image.size_bytes + megabytes * MEBIBYTE)


def pad_to(image: DiskImage, size_bytes: int) -> None:
    """Extend the image to exactly ``size_bytes``.

    Re-running with the same size is a no-op, so an interrupted grow can
    redo this step safely. An image already at least that large is left
    untouched.
    """
    if not image.exists:
        log.debug(f"Not padding missing image {image.path}")
        return
    before = image.size_bytes
    if before >= size_bytes:
        log.debug(f"{image.name} already {before} bytes, no padding needed")
        return
    # Extending with truncate reads back as zeros and stays sparse on disk.
    with open(image.path, "r+b") as handle:
        handle.truncate(size_bytes)
    log.info(f"Padded {image.name} to {size_bytes} bytes (was {before})")
