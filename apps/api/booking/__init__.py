"""Reliable appointment booking core."""
