"""Finding, storing and serving artist images.

Images are looked up in the database first and then on the internet. Whatever
is found is stored in the database and served from there afterwards. When
nothing is found that fact is remembered for a while so that the internet is
not asked again on every request.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from typing import BinaryIO

from euterpe.art import Finder, ImageNotFoundError, NoDiscogsAuthError
from euterpe.artwork import (
    MAX_UPLOAD_SIZE,
    ArtistNotFoundError,
    ArtworkError,
    ArtworkNotFoundError,
    ArtworkTooBigError,
    CachedArtworkNotFoundError,
    Scaler,
    _not_found,
    _read_limited,
    _scale,
)
from euterpe.database import DatabaseWorker
from euterpe.models import ImageSize

log = logging.getLogger(__name__)

# The artists_images column which holds the image of each size.
_COLUMNS = {
    ImageSize.ORIGINAL: "image",
    ImageSize.SMALL: "image_small",
}


class ArtistImageStore:
    """Artist images kept in the library database.

    `finder` looks for images on the internet and `scaler` makes the small
    images; either may be None.
    """

    def __init__(
        self,
        db: DatabaseWorker,
        finder: Finder | None = None,
        scaler: Scaler | None = None,
        *,
        max_concurrent_fetches: int = 1,
    ) -> None:
        self._db = db
        self.finder = finder
        self.scaler = scaler
        self._fetches = threading.BoundedSemaphore(max_concurrent_fetches)

    def find_and_save(
        self, artist_id: int, size: ImageSize = ImageSize.ORIGINAL
    ) -> bytes:
        """Return the artist's image in `size`, finding and storing it if needed."""
        size = ImageSize(size)
        data, found_size = self._find_or_original(artist_id, size)
        if found_size == size:
            return data

        converted = _scale(self.scaler, data, size)
        return self._store(artist_id, converted, size)

    def save(self, artist_id: int, stream: BinaryIO) -> None:
        """Store the image read from `stream` as the artist's original image."""
        data = _read_limited(stream, MAX_UPLOAD_SIZE)
        if len(data) >= MAX_UPLOAD_SIZE:
            raise ArtworkTooBigError()
        if not data:
            raise ArtworkError("uploaded artist image is empty")

        now = int(time.time())
        self._db.execute(
            lambda conn: conn.execute(
                "INSERT OR REPLACE INTO artists_images "
                "(artist_id, image, updated_at) VALUES (?, ?, ?)",
                (artist_id, data, now),
            )
        )

    def remove(self, artist_id: int) -> None:
        """Forget the artist's stored image."""
        self._save_not_found(artist_id)

    def _find_or_original(
        self, artist_id: int, size: ImageSize
    ) -> tuple[bytes, ImageSize]:
        try:
            return self._from_db(artist_id, size)
        except CachedArtworkNotFoundError:
            raise ArtworkNotFoundError() from None
        except ArtworkNotFoundError:
            pass

        with self._fetches:
            try:
                data = self._from_internet(artist_id)
            except ArtistNotFoundError:
                raise
            except (NoDiscogsAuthError, ImageNotFoundError, ArtworkNotFoundError):
                # Expected outcomes: the server is not configured for it or
                # nothing was found. No need to log them.
                pass
            except Exception as err:
                log.warning(
                    "Finding artist %d image on the internet error: %s", artist_id, err
                )
            else:
                return self._store(artist_id, data, ImageSize.ORIGINAL), ImageSize.ORIGINAL

            self._save_not_found(artist_id)
            raise ArtworkNotFoundError()

    def _from_db(self, artist_id: int, size: ImageSize) -> tuple[bytes, ImageSize]:
        data, updated_at = self._from_db_for_size(artist_id, size)
        if data:
            return data, size
        if size == ImageSize.ORIGINAL:
            raise _not_found(updated_at)

        data, updated_at = self._from_db_for_size(artist_id, ImageSize.ORIGINAL)
        if not data:
            raise _not_found(updated_at)
        return data, ImageSize.ORIGINAL

    def _from_db_for_size(self, artist_id: int, size: ImageSize) -> tuple[bytes, int]:
        column = _COLUMNS[size]
        row = self._db.execute(
            lambda conn: conn.execute(
                f"SELECT {column}, updated_at FROM artists_images WHERE artist_id = ?",
                (artist_id,),
            ).fetchone()
        )
        if row is None:
            raise ArtworkNotFoundError()
        blob, updated_at = row
        return (bytes(blob) if blob else b""), (updated_at or 0)

    def _from_internet(self, artist_id: int) -> bytes:
        finder = self.finder
        if finder is None:
            raise ArtworkNotFoundError()

        def name(conn: sqlite3.Connection) -> str:
            row = conn.execute(
                "SELECT name FROM artists WHERE id = ?", (artist_id,)
            ).fetchone()
            if row is None:
                raise ArtistNotFoundError()
            return row[0] or ""

        artist_name = self._db.execute(name)
        try:
            return finder.get_artist_image(artist_name)
        except ImageNotFoundError:
            raise ArtworkNotFoundError() from None

    def _store(self, artist_id: int, data: bytes, size: ImageSize) -> bytes:
        column = _COLUMNS[size]
        now = int(time.time())
        query = (
            f"INSERT INTO artists_images (artist_id, {column}, updated_at) "
            f"VALUES (?, ?, ?) "
            f"ON CONFLICT (artist_id) DO UPDATE SET "
            f"{column} = excluded.{column}, updated_at = excluded.updated_at"
        )
        try:
            self._db.execute(lambda conn: conn.execute(query, (artist_id, data, now)))
        except sqlite3.Error as err:
            log.error("Error executing save artist image query: %s", err)
            raise
        return data

    def _save_not_found(self, artist_id: int) -> None:
        now = int(time.time())
        try:
            self._db.execute(
                lambda conn: conn.execute(
                    "INSERT OR REPLACE INTO artists_images (artist_id, updated_at) "
                    "VALUES (?, ?)",
                    (artist_id, now),
                )
            )
        except sqlite3.Error as err:
            log.error("Error executing save artist image not found query: %s", err)
            raise