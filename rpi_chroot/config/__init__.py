"""Configuration for chroot installations."""
