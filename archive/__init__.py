"""Archival sinks for motion frames."""
