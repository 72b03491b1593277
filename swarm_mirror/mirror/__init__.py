"""Mirroring of bare repositories through a Git Fusion gateway."""
