import io
import time

import pytest

from euterpe.art import ImageNotFoundError, NoDiscogsAuthError
from euterpe.artist_images import ArtistImageStore
from euterpe.artwork import (
    ArtistNotFoundError,
    ArtworkError,
    ArtworkNotFoundError,
    ArtworkTooBigError,
    MAX_UPLOAD_SIZE,
)
from euterpe.database import DatabaseWorker
from euterpe.models import ImageSize

BIG_IMAGE = b"big-image-is-really-bigger-than-the-small"
SECOND_BIG_IMAGE = b"second-artist-original-image"
SMALL_IMAGE = b"small-image"

SCHEMA = """
CREATE TABLE artists (id INTEGER PRIMARY KEY, name TEXT);
CREATE TABLE artists_images (
    artist_id INTEGER PRIMARY KEY,
    image BLOB,
    image_small BLOB,
    updated_at INTEGER
);
"""


class FakeFinder:
    def __init__(self, artist_name=None, error=None):
        self.artist_name = artist_name
        self.error = error
        self.calls = []

    def get_front_image(self, artist, album):
        raise ImageNotFoundError()

    def get_artist_image(self, artist):
        self.calls.append(artist)
        if self.error is not None:
            raise self.error
        if artist != self.artist_name:
            raise ImageNotFoundError()
        return bytes(BIG_IMAGE)


class FakeScaler:
    def __init__(self):
        self.calls = 0

    def scale(self, data, width):
        self.calls += 1
        if width != 60:
            raise ValueError("expected to scale to size 60")
        if data not in (BIG_IMAGE, SECOND_BIG_IMAGE):
            raise ValueError(f"unexpected image {data!r}")
        return bytes(SMALL_IMAGE)


@pytest.fixture
def db():
    worker = DatabaseWorker(":memory:")
    worker.execute(lambda conn: conn.executescript(SCHEMA))
    yield worker
    worker.close()


def add_artist(db, name):
    return db.execute(
        lambda conn: conn.execute("INSERT INTO artists (name) VALUES (?)", (name,)).lastrowid
    )


def test_find_and_save_artist_image_full_flow(db):
    finder = FakeFinder("Testy Testov")
    scaler = FakeScaler()
    store = ArtistImageStore(db, finder, scaler)

    first = add_artist(db, "Testy Testov")
    assert store.find_and_save(first, ImageSize.SMALL) == SMALL_IMAGE
    assert store.find_and_save(first, ImageSize.ORIGINAL) == BIG_IMAGE
    assert finder.calls == ["Testy Testov"]

    with pytest.raises(ArtistNotFoundError):
        store.find_and_save(42, ImageSize.ORIGINAL)

    second = add_artist(db, "Unit Runner")
    store.save(second, io.BytesIO(SECOND_BIG_IMAGE))
    assert store.find_and_save(second, ImageSize.ORIGINAL) == SECOND_BIG_IMAGE
    assert store.find_and_save(second, ImageSize.SMALL) == SMALL_IMAGE

    store.remove(second)
    with pytest.raises(ArtworkNotFoundError):
        store.find_and_save(second, ImageSize.ORIGINAL)


def test_not_found_is_cached(db):
    finder = FakeFinder(error=ImageNotFoundError())
    store = ArtistImageStore(db, finder, FakeScaler())
    artist = add_artist(db, "Not Foundoff")

    for _ in range(10):
        with pytest.raises(ArtworkNotFoundError):
            store.find_and_save(artist, ImageSize.ORIGINAL)

    assert len(finder.calls) == 1


def test_expired_not_found_is_retried(db):
    finder = FakeFinder(error=ImageNotFoundError())
    store = ArtistImageStore(db, finder, FakeScaler())
    artist = add_artist(db, "Not Foundoff")

    with pytest.raises(ArtworkNotFoundError):
        store.find_and_save(artist)
    old = int(time.time()) - 8 * 24 * 3600
    db.execute(
        lambda conn: conn.execute(
            "UPDATE artists_images SET updated_at = ? WHERE artist_id = ?", (old, artist)
        )
    )
    with pytest.raises(ArtworkNotFoundError):
        store.find_and_save(artist)

    assert len(finder.calls) == 2


def test_no_discogs_auth_gives_not_found(db):
    finder = FakeFinder(error=NoDiscogsAuthError())
    store = ArtistImageStore(db, finder)
    artist = add_artist(db, "Someone")

    with pytest.raises(ArtworkNotFoundError):
        store.find_and_save(artist)
    with pytest.raises(ArtworkNotFoundError):
        store.find_and_save(artist)
    assert len(finder.calls) == 1


def test_without_finder_gives_not_found(db):
    store = ArtistImageStore(db)
    artist = add_artist(db, "Someone")
    with pytest.raises(ArtworkNotFoundError):
        store.find_and_save(artist)


def test_small_image_is_stored_after_scaling(db):
    scaler = FakeScaler()
    store = ArtistImageStore(db, None, scaler)
    artist = add_artist(db, "Unit Runner")
    store.save(artist, io.BytesIO(BIG_IMAGE))

    assert store.find_and_save(artist, ImageSize.SMALL) == SMALL_IMAGE
    assert store.find_and_save(artist, ImageSize.SMALL) == SMALL_IMAGE
    assert scaler.calls == 1


def test_save_empty_image_is_rejected(db):
    store = ArtistImageStore(db)
    with pytest.raises(ArtworkError, match="empty"):
        store.save(1, io.BytesIO(b""))


def test_save_too_big_image_is_rejected(db):
    store = ArtistImageStore(db)
    with pytest.raises(ArtworkTooBigError):
        store.save(1, io.BytesIO(b"x" * MAX_UPLOAD_SIZE))
    row = db.execute(
        lambda conn: conn.execute("SELECT COUNT(*) FROM artists_images").fetchone()
    )
    assert row[0] == 0


def test_save_replaces_previous_image(db):
    store = ArtistImageStore(db)
    artist = add_artist(db, "Unit Runner")
    store.save(artist, io.BytesIO(BIG_IMAGE))
    store.save(artist, io.BytesIO(SECOND_BIG_IMAGE))
    assert store.find_and_save(artist) == SECOND_BIG_IMAGE