"""Shared frame and time helpers."""
