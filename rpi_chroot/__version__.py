"""Version information for rpi-chroot."""

__version__ = "0.1.0"
