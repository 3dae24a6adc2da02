"""Value types shared by the media library: tracks, albums, artists and queries."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from enum import IntEnum
from typing import Any

_UINT32_MAX = 2**32 - 1
_UINT8_MAX = 2**8 - 1

# For how long a "no image was found anywhere" answer is trusted before all the
# channels for finding an image are tried again.
NOT_FOUND_CACHE_TTL = timedelta(days=7)

_DEFAULT_MEDIA_FORMAT = "mp3"


class ImageSize(IntEnum):
    """The sizes in which album artwork and artist images are kept."""

    ORIGINAL = 0
    """The full-size image as stored into the image stores."""

    SMALL = 1
    """A size suitable for thumbnails."""


class BrowseOrder(IntEnum):
    """Direction in which browse results are ordered."""

    UNDEFINED = 0
    ASC = 1
    DESC = 2


class BrowseOrderBy(IntEnum):
    """The property by which browse results are ordered."""

    UNDEFINED = 0
    ID = 1
    NAME = 2
    RANDOM = 3
    RECENTLY_PLAYED = 4
    FREQUENTLY_PLAYED = 5
    FAVOURITES = 6
    ARTIST_NAME = 7
    YEAR = 8


def _omit_zero(data: dict[str, Any], optional: dict[str, Any]) -> dict[str, Any]:
    data.update((key, value) for key, value in optional.items() if value)
    return data


def _check_rating(rating: int) -> None:
    if not 0 <= rating <= _UINT8_MAX:
        raise ValueError(f"rating {rating} is out of range")


@dataclass(frozen=True)
class SearchResult:
    """A single media file in the library together with its meta data.

    `duration` is in milliseconds, `favourite` and `last_played` are Unix
    timestamps (zero when unset), `rating` is in [1-5] or 0 when not rated,
    `bitrate` is in bits per second and `size` in bytes.
    """

    id: int = 0
    artist_id: int = 0
    artist: str = ""
    album_id: int = 0
    album: str = ""
    title: str = ""
    track_number: int = 0
    format: str = ""
    duration: int = 0
    plays: int = 0
    favourite: int = 0
    last_played: int = 0
    rating: int = 0
    year: int = 0
    bitrate: int = 0
    size: int = 0
    created_at: int = 0

    def __post_init__(self) -> None:
        _check_rating(self.rating)

    def to_json_dict(self) -> dict[str, Any]:
        """Return the API representation; zero optional fields are left out."""
        return _omit_zero(
            {
                "id": self.id,
                "artist_id": self.artist_id,
                "artist": self.artist,
                "album_id": self.album_id,
                "album": self.album,
                "title": self.title,
                "track": self.track_number,
                "format": self.format,
                "duration": self.duration,
            },
            {
                "plays": self.plays,
                "favourite": self.favourite,
                "last_played": self.last_played,
                "rating": self.rating,
                "year": self.year,
                "bitrate": self.bitrate,
                "size": self.size,
            },
        )


TrackInfo = SearchResult


@dataclass(frozen=True)
class SearchArgs:
    """Parameters of a library search. A `count` of zero means "no limit"."""

    query: str = ""
    offset: int = 0
    count: int = 0

    def __post_init__(self) -> None:
        for name in ("offset", "count"):
            value = getattr(self, name)
            if not 0 <= value <= _UINT32_MAX:
                raise ValueError(f"{name} {value} is out of range")


@dataclass(frozen=True)
class Artist:
    """An artist from the library database."""

    id: int = 0
    name: str = ""
    album_count: int = 0
    favourite: int = 0
    rating: int = 0

    def __post_init__(self) -> None:
        _check_rating(self.rating)

    def to_json_dict(self) -> dict[str, Any]:
        """Return the API representation; zero optional fields are left out."""
        return _omit_zero(
            {
                "artist_id": self.id,
                "artist": self.name,
                "album_count": self.album_count,
            },
            {"favourite": self.favourite, "rating": self.rating},
        )


@dataclass(frozen=True)
class Album:
    """An album from the library database. `duration` is in milliseconds."""

    id: int = 0
    name: str = ""
    artist: str = ""
    song_count: int = 0
    duration: int = 0
    plays: int = 0
    favourite: int = 0
    last_played: int = 0
    rating: int = 0
    year: int = 0

    def __post_init__(self) -> None:
        _check_rating(self.rating)

    def to_json_dict(self) -> dict[str, Any]:
        """Return the API representation; zero optional fields are left out."""
        return _omit_zero(
            {
                "album_id": self.id,
                "album": self.name,
                "artist": self.artist,
                "track_count": self.song_count,
                "duration": self.duration,
            },
            {
                "plays": self.plays,
                "favourite": self.favourite,
                "last_played": self.last_played,
                "rating": self.rating,
                "year": self.year,
            },
        )


@dataclass(frozen=True)
class Favourites:
    """A set of favourite artists, albums and tracks, by ID."""

    artist_ids: tuple[int, ...] = field(default_factory=tuple)
    album_ids: tuple[int, ...] = field(default_factory=tuple)
    track_ids: tuple[int, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        for name in ("artist_ids", "album_ids", "track_ids"):
            object.__setattr__(self, name, tuple(getattr(self, name)))


@dataclass(frozen=True)
class BrowseArgs:
    """Arguments for browsing the library page by page.

    `page` is ignored when `offset` is greater than zero. `from_year` and
    `to_year` are inclusive limits; None means no limit.
    """

    page: int = 0
    per_page: int = 0
    order: BrowseOrder = BrowseOrder.UNDEFINED
    order_by: BrowseOrderBy = BrowseOrderBy.UNDEFINED
    offset: int = 0
    artist_id: int = 0
    from_year: int | None = None
    to_year: int | None = None

    def __post_init__(self) -> None:
        for name in ("page", "per_page", "offset"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        object.__setattr__(self, "order", BrowseOrder(self.order))
        object.__setattr__(self, "order_by", BrowseOrderBy(self.order_by))


def _extension(path: str) -> str:
    separators = {os.sep, "/"}
    if os.altsep:
        separators.add(os.altsep)
    for position in range(len(path) - 1, -1, -1):
        char = path[position]
        if char in separators:
            break
        if char == ".":
            return path[position:]
    return ""


def media_format_from_file_name(path: str | os.PathLike[str]) -> str:
    """Return the lower-case media format from a file name, "mp3" when it has none."""
    media_format = _extension(os.fspath(path)).lstrip(".")
    return (media_format or _DEFAULT_MEDIA_FORMAT).lower()