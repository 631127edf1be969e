"""
Playlist persistence.

Playlists live in one JSON file:

    [{"name": "Abfahrt", "movies": [{"path": "/media/zug/a.mp4"}, ...]}, ...]

Only the fields the relay reads are validated; anything else a client
stores alongside them is kept as-is.
"""

import json
import logging
import os
import tempfile
import threading

logger = logging.getLogger(__name__)


class PlaylistError(ValueError):
    """Malformed playlist data."""


def validate_playlists(data) -> list[dict]:
    if not isinstance(data, list):
        raise PlaylistError("playlists must be a list")
    for i, playlist in enumerate(data):
        if not isinstance(playlist, dict):
            raise PlaylistError(f"playlist {i} is not an object")
        movies = playlist.get("movies", [])
        if not isinstance(movies, list):
            raise PlaylistError(f"playlist {i}: 'movies' must be a list")
        for j, movie in enumerate(movies):
            if not isinstance(movie, dict) or not isinstance(movie.get("path"), str):
                raise PlaylistError(f"playlist {i}, movie {j}: needs a string 'path'")
    return data


class PlaylistStore:
    """Playlists in memory, saved to *path* on request."""

    def __init__(self, path: str):
        self.path = path
        self._playlists: list[dict] = []
        self._lock = threading.Lock()   # save() runs in an executor thread

    def load(self) -> list[dict]:
        """Read playlists from disk.  A missing file means no playlists yet."""
        try:
            with open(self.path) as f:
                data = validate_playlists(json.load(f))
        except FileNotFoundError:
            logger.warning("No playlist file at %s — starting empty", self.path)
            data = []
        except (json.JSONDecodeError, PlaylistError) as e:
            logger.error("Ignoring unreadable playlist file %s: %s", self.path, e)
            data = []
        with self._lock:
            self._playlists = data
        logger.info("Loaded %d playlist(s) from %s", len(data), self.path)
        return self.playlists

    def save(self) -> str:
        """Atomically write the playlists to disk."""
        with self._lock:
            data = json.dumps(self._playlists, indent=2)
        d = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(d, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(data)
                f.write("\n")
            os.replace(tmp, self.path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        logger.info("Saved %d playlist(s) to %s", len(self._playlists), self.path)
        return self.path

    @property
    def playlists(self) -> list[dict]:
        with self._lock:
            return json.loads(json.dumps(self._playlists))

    def replace(self, data) -> int:
        playlists = validate_playlists(data)
        with self._lock:
            self._playlists = playlists
        return len(playlists)

    def movie_path(self, playlist_index: int, movie_index: int) -> str:
        """Path of one movie.  Raises IndexError for an unknown position."""
        with self._lock:
            if not 0 <= playlist_index < len(self._playlists):
                raise IndexError(f"no playlist {playlist_index}")
            movies = self._playlists[playlist_index].get("movies", [])
            if not 0 <= movie_index < len(movies):
                raise IndexError(f"playlist {playlist_index} has no movie {movie_index}")
            return movies[movie_index]["path"]
