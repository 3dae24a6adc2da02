"""Finding, storing and serving album artwork.

Artwork is looked up in the database first, then in the album's directory and
finally on the internet. Whatever is found is stored in the database and
served from there afterwards. When nothing is found anywhere that fact is
remembered for a while so that the searches are not repeated on every request.
"""

from __future__ import annotations

import logging
import os
import re
import sqlite3
import threading
import time
from typing import BinaryIO, Callable, Iterable, Iterator, Protocol

from euterpe.art import Finder, ImageNotFoundError
from euterpe.database import DatabaseWorker
from euterpe.models import NOT_FOUND_CACHE_TTL, ImageSize

log = logging.getLogger(__name__)

# Uploads of this size or bigger are refused.
MAX_UPLOAD_SIZE = 5 * 1024 * 1024

# Width in pixels of ImageSize.SMALL images.
SMALL_IMAGE_WIDTH = 60

_IMAGE_FILE = re.compile(r"\.(png|gif|jpeg|jpg)\Z", re.IGNORECASE)


class ArtworkError(ValueError):
    """The artwork handed to the library cannot be used."""


class ArtworkTooBigError(ArtworkError):
    """The artwork is bigger than the library accepts."""

    def __init__(self, message: str = "artwork is too big") -> None:
        super().__init__(message)


class ArtworkNotFoundError(LookupError):
    """No artwork was found."""

    def __init__(self, message: str = "artwork not found") -> None:
        super().__init__(message)


class CachedArtworkNotFoundError(ArtworkNotFoundError):
    """Every way of finding the artwork has been tried recently, without luck."""

    def __init__(self, message: str = "artwork not found (cached)") -> None:
        super().__init__(message)


class AlbumNotFoundError(LookupError):
    """The album is not in the library."""

    def __init__(self, message: str = "album not found") -> None:
        super().__init__(message)


class ArtistNotFoundError(LookupError):
    """The artist is not in the library."""

    def __init__(self, message: str = "artist not found") -> None:
        super().__init__(message)


class Scaler(Protocol):
    """Anything which can resize an image to a given width."""

    def scale(self, data: bytes, width: int) -> bytes:
        ...


def _read_limited(stream: BinaryIO, limit: int) -> bytes:
    data = bytearray()
    while len(data) < limit:
        chunk = stream.read(limit - len(data))
        if not chunk:
            break
        data += chunk
    return bytes(data)


def _scale(scaler: Scaler | None, data: bytes, size: ImageSize) -> bytes:
    if scaler is None:
        raise RuntimeError("error scaling image: no image scaler configured")
    if size != ImageSize.SMALL:
        raise RuntimeError(f"error scaling image: unsupported size {size!r}")
    return scaler.scale(data, SMALL_IMAGE_WIDTH)


def _not_found(updated_at: int) -> ArtworkNotFoundError:
    if time.time() < updated_at + NOT_FOUND_CACHE_TTL.total_seconds():
        return CachedArtworkNotFoundError()
    return ArtworkNotFoundError()


def select_artwork(
    album_path: str | os.PathLike[str],
    candidates: Iterable[str | os.PathLike[str]],
) -> str | None:
    """Return the image among `candidates` most likely to be the album cover.

    Names starting with "cover." or "front." are preferred, then names
    containing those words, then "artwork". Hidden files and files outside
    the album's own directory lose points. None is returned when no
    candidate scores above zero.
    """
    album_dir = os.path.normpath(os.fspath(album_path))
    selected: str | None = None
    best = 0

    for candidate in candidates:
        path = os.fspath(candidate)
        base = os.path.basename(path).lower()

        if base.startswith(("cover.", "front.")):
            score = 15
        elif "cover" in base or "front" in base:
            score = 10
        elif "artwork" in base:
            score = 8
        else:
            score = 5

        if base.startswith("."):
            score -= 4

        if os.path.normpath(os.path.dirname(path)) == album_dir:
            score += 4
        else:
            score -= 4

        if score > best:
            selected, best = path, score

    return selected


def _image_files(directory: str) -> Iterator[str]:
    """Yield image file paths under `directory` in lexical order.

    OSError from unreadable or missing directories propagates.
    """
    with os.scandir(directory) as entries:
        ordered = sorted(entries, key=lambda entry: entry.name)
    for entry in ordered:
        if entry.is_dir(follow_symlinks=False):
            yield from _image_files(entry.path)
        elif _IMAGE_FILE.search(entry.name):
            yield entry.path


def find_artwork_in_directory(album_path: str | os.PathLike[str]) -> str:
    """Return the path of the best cover image under `album_path`.

    Raises ArtworkNotFoundError when there is none and OSError when the
    directory cannot be read.
    """
    root = os.fspath(album_path)
    candidates = list(_image_files(root))

    selected = select_artwork(root, candidates)
    if selected is None:
        raise ArtworkNotFoundError()
    return selected


class AlbumArtworkStore:
    """Album artwork kept in the library database.

    `album_path` maps an album ID to the directory of the album and raises
    AlbumNotFoundError for unknown albums. `finder` looks for artwork on the
    internet and `scaler` makes the small images; either may be None.
    """

    def __init__(
        self,
        db: DatabaseWorker,
        album_path: Callable[[int], str | os.PathLike[str]],
        finder: Finder | None = None,
        scaler: Scaler | None = None,
        *,
        max_concurrent_fetches: int = 1,
    ) -> None:
        self._db = db
        self._album_path = album_path
        self.finder = finder
        self.scaler = scaler
        self._fetches = threading.BoundedSemaphore(max_concurrent_fetches)

    def find_and_save(
        self, album_id: int, size: ImageSize = ImageSize.ORIGINAL
    ) -> bytes:
        """Return the album's artwork in `size`, finding and storing it if needed."""
        size = ImageSize(size)
        data, found_size = self._find_or_original(album_id, size)
        if found_size == size:
            return data

        converted = _scale(self.scaler, data, size)
        return self._store(album_id, converted, size)

    def save(self, album_id: int, stream: BinaryIO) -> None:
        """Store the artwork read from `stream` as the album's original image."""
        data = _read_limited(stream, MAX_UPLOAD_SIZE)
        if len(data) >= MAX_UPLOAD_SIZE:
            raise ArtworkTooBigError()
        if not data:
            raise ArtworkError("uploaded artwork is empty")

        now = int(time.time())
        self._db.execute(
            lambda conn: conn.execute(
                "INSERT OR REPLACE INTO albums_artworks "
                "(album_id, artwork_cover, updated_at) VALUES (?, ?, ?)",
                (album_id, data, now),
            )
        )

    def remove(self, album_id: int) -> None:
        """Forget the album's stored artwork.

        Artwork which came from the album's directory will be found again
        once the not-found answer expires.
        """
        self._save_not_found(album_id)

    def _find_or_original(
        self, album_id: int, size: ImageSize
    ) -> tuple[bytes, ImageSize]:
        try:
            return self._from_db(album_id, size)
        except CachedArtworkNotFoundError:
            raise ArtworkNotFoundError() from None
        except ArtworkNotFoundError:
            pass

        with self._fetches:
            try:
                data = self._from_filesystem(album_id)
            except ArtworkNotFoundError:
                pass
            else:
                return self._store(album_id, data, ImageSize.ORIGINAL), ImageSize.ORIGINAL

            try:
                data = self._from_internet(album_id)
            except AlbumNotFoundError:
                raise
            except ArtworkNotFoundError:
                pass
            except Exception as err:
                log.warning(
                    "Finding album %d artwork on the internet error: %s", album_id, err
                )
            else:
                return self._store(album_id, data, ImageSize.ORIGINAL), ImageSize.ORIGINAL

            self._save_not_found(album_id)
            raise ArtworkNotFoundError()

    def _from_db(self, album_id: int, size: ImageSize) -> tuple[bytes, ImageSize]:
        data, updated_at = self._from_db_for_size(album_id, size)
        if data:
            return data, size
        if size == ImageSize.ORIGINAL:
            raise _not_found(updated_at)

        data, updated_at = self._from_db_for_size(album_id, ImageSize.ORIGINAL)
        if not data:
            raise _not_found(updated_at)
        return data, ImageSize.ORIGINAL

    def _from_db_for_size(self, album_id: int, size: ImageSize) -> tuple[bytes, int]:
        column = "artwork_cover_small" if size == ImageSize.SMALL else "artwork_cover"
        row = self._db.execute(
            lambda conn: conn.execute(
                f"SELECT {column}, updated_at FROM albums_artworks WHERE album_id = ?",
                (album_id,),
            ).fetchone()
        )
        if row is None:
            raise ArtworkNotFoundError()
        blob, updated_at = row
        return (bytes(blob) if blob else b""), (updated_at or 0)

    def _from_filesystem(self, album_id: int) -> bytes:
        selected = find_artwork_in_directory(self._album_path(album_id))
        log.info("Selected album [%d] artwork: %s", album_id, selected)
        with open(selected, "rb") as fh:
            return fh.read()

    def _from_internet(self, album_id: int) -> bytes:
        finder = self.finder
        if finder is None:
            raise ArtworkNotFoundError()

        def names(conn: sqlite3.Connection) -> tuple[str, str]:
            album = conn.execute(
                "SELECT name FROM albums WHERE id = ?", (album_id,)
            ).fetchone()
            if album is None:
                raise AlbumNotFoundError()
            artist = conn.execute(
                """
                SELECT a.name, COUNT(*) AS cnt
                FROM tracks AS t
                LEFT JOIN artists AS a ON a.id = t.artist_id
                WHERE album_id = ?
                GROUP BY artist_id
                ORDER BY cnt DESC
                LIMIT 1
                """,
                (album_id,),
            ).fetchone()
            artist_name = artist[0] if artist is not None and artist[0] else ""
            return album[0], artist_name

        album_name, artist_name = self._db.execute(names)
        try:
            return finder.get_front_image(artist_name, album_name)
        except ImageNotFoundError:
            raise ArtworkNotFoundError() from None

    def _store(self, album_id: int, data: bytes, size: ImageSize) -> bytes:
        column = "artwork_cover_small" if size == ImageSize.SMALL else "artwork_cover"
        now = int(time.time())
        query = (
            f"INSERT INTO albums_artworks (album_id, {column}, updated_at) "
            f"VALUES (?, ?, ?) "
            f"ON CONFLICT (album_id) DO UPDATE SET "
            f"{column} = excluded.{column}, updated_at = excluded.updated_at"
        )
        try:
            self._db.execute(lambda conn: conn.execute(query, (album_id, data, now)))
        except sqlite3.Error as err:
            log.error("Error executing save artwork query: %s", err)
            raise
        return data

    def _save_not_found(self, album_id: int) -> None:
        now = int(time.time())
        try:
            self._db.execute(
                lambda conn: conn.execute(
                    "INSERT OR REPLACE INTO albums_artworks (album_id, updated_at) "
                    "VALUES (?, ?)",
                    (album_id, now),
                )
            )
        except sqlite3.Error as err:
            log.error("Error executing save artwork not found query: %s", err)
            raise