"""Host services: downloads, emulation, packages and the chroot shell."""
