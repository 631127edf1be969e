"""
PlaybackState — what the player is doing right now.

The player answers the ``playstate`` query with a JSON object:

    {"path": "/media/a.mp4", "position": 12.5, "duration": 94.0,
     "volume": 0.8, "rate": 1.0, "playing": true}

``playlist_index`` / ``movie_index`` are our own bookkeeping; the player
only reports them if it knows better.
"""

import json
import math
from dataclasses import asdict, dataclass, replace

NO_INDEX = -1


class PlaybackDecodeError(ValueError):
    """The player's reply could not be read as a playback state."""


@dataclass(frozen=True)
class PlaybackState:
    connected: bool = False
    path: str = ""
    playlist_index: int = NO_INDEX
    movie_index: int = NO_INDEX
    position: float = 0.0
    duration: float = 0.0
    volume: float = 0.0
    rate: float = 0.0
    playing: bool = False

    def disconnected(self) -> "PlaybackState":
        """Copy with every transient field cleared.

        Selection (indices), volume and rate survive so the UI keeps
        showing the last known choice while the player is away.
        """
        return replace(self, connected=False, path="", position=0.0,
                       duration=0.0, playing=False)

    def to_dict(self) -> dict:
        return asdict(self)


def _number(data: dict, key: str, default: float) -> float:
    val = data.get(key, default)
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        raise PlaybackDecodeError(f"{key!r} must be a number, got {val!r}")
    if not math.isfinite(val):
        raise PlaybackDecodeError(f"{key!r} must be finite, got {val!r}")
    return float(val)


def _index(data: dict, key: str, default: int) -> int:
    val = data.get(key, default)
    if isinstance(val, bool) or not isinstance(val, int):
        raise PlaybackDecodeError(f"{key!r} must be an integer, got {val!r}")
    return val


def decode_state(reply: str, current: PlaybackState) -> PlaybackState:
    """Build a connected state from a ``playstate`` reply.

    Indices the player does not report are carried over from *current*.
    """
    if not reply.strip():
        raise PlaybackDecodeError("empty reply")
    try:
        data = json.loads(reply)
    except json.JSONDecodeError as e:
        raise PlaybackDecodeError(f"not JSON: {e}") from None
    if not isinstance(data, dict):
        raise PlaybackDecodeError("reply is not a JSON object")

    path = data.get("path", "")
    if not isinstance(path, str):
        raise PlaybackDecodeError(f"'path' must be a string, got {path!r}")
    playing = data.get("playing", False)
    if not isinstance(playing, bool):
        raise PlaybackDecodeError(f"'playing' must be a boolean, got {playing!r}")

    return PlaybackState(
        connected=True,
        path=path,
        playlist_index=_index(data, "playlist_index", current.playlist_index),
        movie_index=_index(data, "movie_index", current.movie_index),
        position=_number(data, "position", 0.0),
        duration=_number(data, "duration", 0.0),
        volume=min(1.0, max(0.0, _number(data, "volume", current.volume))),
        rate=_number(data, "rate", current.rate),
        playing=playing,
    )
