"""Host storage operations: images, loop devices, mounts and state."""
