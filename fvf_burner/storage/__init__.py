"""Storage layer: external commands, block devices, partition tables and mounts."""
