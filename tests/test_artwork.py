import io
import os

import pytest

from euterpe.art import ImageNotFoundError
from euterpe.artwork import (
    MAX_UPLOAD_SIZE,
    AlbumArtworkStore,
    AlbumNotFoundError,
    ArtworkError,
    ArtworkNotFoundError,
    ArtworkTooBigError,
    find_artwork_in_directory,
    select_artwork,
)
from euterpe.database import DatabaseWorker
from euterpe.models import ImageSize

BIG_IMAGE = b"big-image-is-really-bigger-than-the-small"
SECOND_BIG_IMAGE = b"second-album-original-image"
SMALL_IMAGE = b"small-image"
THIRD_ALBUM_COVER = b"expected-cover-file-contents"

FIRST_ARTIST = "Testy Testov"
FIRST_ALBUM = "The Test Strikes Back"

SCHEMA = """
CREATE TABLE artists (id INTEGER PRIMARY KEY, name TEXT NOT NULL);
CREATE TABLE albums (id INTEGER PRIMARY KEY, name TEXT NOT NULL, fs_path TEXT NOT NULL);
CREATE TABLE tracks (
    id INTEGER PRIMARY KEY, album_id INTEGER, artist_id INTEGER, name TEXT
);
CREATE TABLE albums_artworks (
    album_id INTEGER PRIMARY KEY,
    artwork_cover BLOB,
    artwork_cover_small BLOB,
    updated_at INTEGER
);
"""


class FakeFinder:
    def __init__(self, stub):
        self._stub = stub
        self.front_calls = []

    def get_front_image(self, artist, album):
        self.front_calls.append((artist, album))
        return self._stub(artist, album)

    def get_artist_image(self, artist):
        raise ImageNotFoundError()


class FakeScaler:
    def __init__(self):
        self.widths = []

    def scale(self, data, width):
        self.widths.append(width)
        if width != 60:
            raise ValueError("expected to scale to size 60")
        if data not in (BIG_IMAGE, SECOND_BIG_IMAGE):
            raise ValueError(f"expected to resize one of the big images but it was {data!r}")
        return SMALL_IMAGE


def _first_album_only(artist, album):
    if artist != FIRST_ARTIST or album != FIRST_ALBUM:
        raise ImageNotFoundError()
    return BIG_IMAGE


def _never_found(artist, album):
    raise ImageNotFoundError()


class Library:
    def __init__(self, db):
        self.db = db
        self.album_dirs = {}

    def add_track(self, artist, album, title, path):
        directory = os.path.dirname(path)

        def insert(conn):
            row = conn.execute("SELECT id FROM artists WHERE name = ?", (artist,)).fetchone()
            artist_id = row[0] if row else conn.execute(
                "INSERT INTO artists (name) VALUES (?)", (artist,)
            ).lastrowid
            row = conn.execute(
                "SELECT id FROM albums WHERE name = ? AND fs_path = ?", (album, directory)
            ).fetchone()
            album_id = row[0] if row else conn.execute(
                "INSERT INTO albums (name, fs_path) VALUES (?, ?)", (album, directory)
            ).lastrowid
            conn.execute(
                "INSERT INTO tracks (album_id, artist_id, name) VALUES (?, ?, ?)",
                (album_id, artist_id, title),
            )
            return album_id

        album_id = self.db.execute(insert)
        self.album_dirs[album_id] = directory
        return album_id

    def album_path(self, album_id):
        try:
            return self.album_dirs[album_id]
        except KeyError:
            raise AlbumNotFoundError() from None


def _write(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return str(path)


@pytest.fixture
def db():
    worker = DatabaseWorker()
    worker.execute(lambda conn: conn.executescript(SCHEMA))
    yield worker
    worker.close()


@pytest.fixture
def library(db):
    return Library(db)


@pytest.fixture
def finder():
    return FakeFinder(_first_album_only)


@pytest.fixture
def store(db, library, finder):
    return AlbumArtworkStore(db, library.album_path, finder=finder, scaler=FakeScaler())


@pytest.fixture
def albums(tmp_path):
    root = tmp_path / "albums"
    files = {
        "first": _write(root / "1" / "first.mp3", b"some-file"),
        "second": _write(root / "2" / "second.mp3", b"second-file"),
        "third": _write(root / "3" / "third.mp3", b"third-file"),
        "fourth": _write(root / "4" / "fourth.mp3", b"fourth-file"),
    }
    _write(root / "3" / "inner" / "cover.png", b"inner/cover.png")
    _write(root / "3" / ".cover.png", b".cover.png")
    _write(root / "3" / "cover-me-baby.jpeg", b"cover-me-baby.jpeg")
    _write(root / "3" / "some-artwork-here.jpg", b"some-artwork-here.jpg")
    _write(root / "3" / "cover.png", THIRD_ALBUM_COVER)
    return files


def test_small_image_is_scaled_from_internet_original(store, library, finder, albums):
    album_id = library.add_track(FIRST_ARTIST, FIRST_ALBUM, "One Final Bug", albums["first"])

    assert store.find_and_save(album_id, ImageSize.SMALL) == SMALL_IMAGE
    assert store.find_and_save(album_id, ImageSize.ORIGINAL) == BIG_IMAGE
    assert finder.front_calls == [(FIRST_ARTIST, FIRST_ALBUM)]
    assert store.scaler.widths == [60]


def test_unknown_album_raises_album_not_found(store):
    with pytest.raises(AlbumNotFoundError):
        store.find_and_save(42, ImageSize.ORIGINAL)


def test_saved_artwork_is_returned_and_scaled(store, library, finder, albums):
    album_id = library.add_track("Unit Runner", FIRST_ALBUM, "Good Coverage", albums["second"])

    store.save(album_id, io.BytesIO(SECOND_BIG_IMAGE))

    assert store.find_and_save(album_id, ImageSize.ORIGINAL) == SECOND_BIG_IMAGE
    assert store.find_and_save(album_id, ImageSize.SMALL) == SMALL_IMAGE
    assert store.find_and_save(album_id, ImageSize.ORIGINAL) == SECOND_BIG_IMAGE
    assert finder.front_calls == []


def test_artwork_is_found_on_the_filesystem(store, library, finder, albums):
    album_id = library.add_track(
        "Unit Runner", "Into The New Regressions We Go", "Forever More", albums["third"]
    )

    assert store.find_and_save(album_id, ImageSize.ORIGINAL) == THIRD_ALBUM_COVER
    assert finder.front_calls == []


def test_removed_artwork_is_not_found(store, library, albums):
    album_id = library.add_track("Unit Runner", FIRST_ALBUM, "Good Coverage", albums["second"])
    store.save(album_id, io.BytesIO(SECOND_BIG_IMAGE))

    store.remove(album_id)

    with pytest.raises(ArtworkNotFoundError):
        store.find_and_save(album_id, ImageSize.ORIGINAL)


def test_not_found_answers_are_cached(store, library, albums):
    not_found = FakeFinder(_never_found)
    store.finder = not_found
    album_id = library.add_track(
        "I Have No Funny Ideas At This Point", "Fourth Album", "Maybe Next Time", albums["fourth"]
    )

    for _ in range(10):
        with pytest.raises(ArtworkNotFoundError):
            store.find_and_save(album_id, ImageSize.ORIGINAL)

    assert len(not_found.front_calls) == 1


def test_expired_not_found_answer_is_retried(store, db, library, albums):
    not_found = FakeFinder(_never_found)
    store.finder = not_found
    album_id = library.add_track("Somebody", "Fourth Album", "Maybe Next Time", albums["fourth"])

    with pytest.raises(ArtworkNotFoundError):
        store.find_and_save(album_id)
    db.execute(
        lambda conn: conn.execute(
            "UPDATE albums_artworks SET updated_at = 0 WHERE album_id = ?", (album_id,)
        )
    )
    with pytest.raises(ArtworkNotFoundError):
        store.find_and_save(album_id)

    assert len(not_found.front_calls) == 2


def test_without_finder_artwork_is_not_found(db, library, albums):
    store = AlbumArtworkStore(db, library.album_path)
    album_id = library.add_track(FIRST_ARTIST, FIRST_ALBUM, "One Final Bug", albums["first"])

    with pytest.raises(ArtworkNotFoundError):
        store.find_and_save(album_id)


def test_artist_with_most_tracks_is_asked_for(store, library, tmp_path):
    path = _write(tmp_path / "compilation" / "a.mp3", b"a")
    album_id = library.add_track("Minor Guest", "Shared Album", "Guest Song", path)
    library.add_track("Main Artist", "Shared Album", "First", path)
    library.add_track("Main Artist", "Shared Album", "Second", path)
    recorder = FakeFinder(_never_found)
    store.finder = recorder

    with pytest.raises(ArtworkNotFoundError):
        store.find_and_save(album_id)

    assert recorder.front_calls == [("Main Artist", "Shared Album")]


def test_save_rejects_too_big_artwork(store, library, albums):
    album_id = library.add_track(FIRST_ARTIST, FIRST_ALBUM, "One Final Bug", albums["first"])

    with pytest.raises(ArtworkTooBigError):
        store.save(album_id, io.BytesIO(b"x" * MAX_UPLOAD_SIZE))


def test_save_rejects_empty_artwork(store, library, albums):
    album_id = library.add_track(FIRST_ARTIST, FIRST_ALBUM, "One Final Bug", albums["first"])

    with pytest.raises(ArtworkError, match="empty"):
        store.save(album_id, io.BytesIO(b""))


def test_select_artwork_prefers_cover_in_album_directory():
    album = os.path.join("music", "album")
    candidates = [
        os.path.join(album, "inner", "cover.png"),
        os.path.join(album, ".cover.png"),
        os.path.join(album, "cover-me-baby.jpeg"),
        os.path.join(album, "some-artwork-here.jpg"),
        os.path.join(album, "cover.png"),
    ]

    assert select_artwork(album, candidates) == os.path.join(album, "cover.png")


def test_select_artwork_first_of_equal_scores_wins():
    album = os.path.join("music", "album")
    candidates = [os.path.join(album, "a.jpg"), os.path.join(album, "b.jpg")]

    assert select_artwork(album, candidates) == candidates[0]


def test_select_artwork_without_candidates():
    assert select_artwork("album", []) is None


def test_find_artwork_in_directory(albums):
    album_dir = os.path.dirname(albums["third"])

    found = find_artwork_in_directory(album_dir)

    assert found == os.path.join(album_dir, "cover.png")


def test_find_artwork_in_directory_without_images(albums):
    with pytest.raises(ArtworkNotFoundError):
        find_artwork_in_directory(os.path.dirname(albums["first"]))


def test_find_artwork_in_missing_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        find_artwork_in_directory(tmp_path / "not-there")