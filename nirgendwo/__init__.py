"""Zug ins Nirgendwo — relay between the web UI and the movie player."""

__version__ = "2.0.0"
