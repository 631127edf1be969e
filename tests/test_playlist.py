from __future__ import annotations

import json

import pytest

from nirgendwo.lib.playlist import PlaylistError, PlaylistStore

PLAYLISTS = [
    {"name": "Abfahrt", "movies": [{"path": "/media/a.mp4"}, {"path": "/media/b.mp4"}]},
    {"name": "Ankunft", "movies": []},
]


def test_missing_file_loads_empty(tmp_path):
    store = PlaylistStore(str(tmp_path / "playlists.json"))
    assert store.load() == []


def test_unreadable_file_loads_empty(tmp_path):
    path = tmp_path / "playlists.json"
    path.write_text("{not json")
    assert PlaylistStore(str(path)).load() == []


def test_save_writes_what_load_reads(tmp_path):
    path = tmp_path / "sub" / "playlists.json"
    store = PlaylistStore(str(path))
    store.replace(PLAYLISTS)
    store.save()

    assert json.loads(path.read_text()) == PLAYLISTS
    assert PlaylistStore(str(path)).load() == PLAYLISTS
    assert not list(path.parent.glob("*.tmp"))


def test_movie_path_lookup(tmp_path):
    store = PlaylistStore(str(tmp_path / "p.json"))
    store.replace(PLAYLISTS)
    assert store.movie_path(0, 1) == "/media/b.mp4"


@pytest.mark.parametrize("position", [(2, 0), (1, 0), (0, 2), (-1, 0)])
def test_movie_path_out_of_range(tmp_path, position):
    store = PlaylistStore(str(tmp_path / "p.json"))
    store.replace(PLAYLISTS)
    with pytest.raises(IndexError):
        store.movie_path(*position)


@pytest.mark.parametrize("data", [{}, [1], [{"movies": {}}], [{"movies": [{"title": "x"}]}]])
def test_replace_rejects_malformed(tmp_path, data):
    store = PlaylistStore(str(tmp_path / "p.json"))
    with pytest.raises(PlaylistError):
        store.replace(data)


def test_playlists_returns_a_copy(tmp_path):
    store = PlaylistStore(str(tmp_path / "p.json"))
    store.replace(PLAYLISTS)
    store.playlists[0]["name"] = "changed"
    assert store.playlists[0]["name"] == "Abfahrt"
