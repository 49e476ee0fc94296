"""Daemon descriptors, process ownership, launch, and shutdown."""
