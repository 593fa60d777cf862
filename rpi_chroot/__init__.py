"""Provision and manage emulated Raspberry Pi root filesystems."""

from rpi_chroot.__version__ import __version__


__all__ = ["__version__"]
