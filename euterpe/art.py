"""Finding album cover art and artist images on the internet.

Album artwork is found by asking the MusicBrainz web service for release IDs
matching an artist and album name. The Cover Art Archive is then asked for the
front image of those releases, and the first release which has one wins.

Artist images are found with the MusicBrainz database and Discogs. MusicBrainz
gives the artist IDs, their URL relations lead to a Discogs artist ID, and
Discogs gives the images.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterator, Protocol
from urllib.parse import quote, urlsplit
from xml.parsers import expat

import requests

log = logging.getLogger(__name__)

IMAGE_SIZE_250 = 250
IMAGE_SIZE_500 = 500
IMAGE_SIZE_1200 = 1200
IMAGE_SIZE_ORIGINAL = 0

DEFAULT_MIN_SCORE = 95
DEFAULT_MUSICBRAINZ_API_HOST = "https://musicbrainz.org"
DEFAULT_DISCOGS_API_HOST = "https://api.discogs.com"
DEFAULT_COVER_ART_ARCHIVE_HOST = "https://coverartarchive.org"

_REQUEST_TIMEOUT = 10.0
_DISCOGS_IMAGE_LIMIT = 2 * 1024 * 1024
_MAX_DISCOGS_ID_TRIES = 2


class ArtError(Exception):
    """A remote service answered in an unexpected way."""


class ImageNotFoundError(LookupError):
    """No suitable image was found anywhere."""

    def __init__(self, message: str = "image not found") -> None:
        super().__init__(message)


class ImageTooBigError(ValueError):
    """An image was found but it is too big for the server to handle."""

    def __init__(self, message: str = "image is too big") -> None:
        super().__init__(message)


class NoDiscogsAuthError(RuntimeError):
    """No Discogs token is configured, so artist images cannot be found."""

    def __init__(
        self, message: str = "authentication with Discogs is not configured"
    ) -> None:
        super().__init__(message)


class _NoDiscogsRelationError(LookupError):
    """The MusicBrainz artist has no usable "discogs" relation."""

    def __init__(
        self, message: str = "no Discogs relation found in Music Brainz info"
    ) -> None:
        super().__init__(message)


class CoverArtHTTPError(Exception):
    """The Cover Art Archive answered with a non-successful HTTP status."""

    def __init__(self, status_code: int, url: str = "") -> None:
        super().__init__(f"cover art archive returned HTTP {status_code} for {url}")
        self.status_code = status_code
        self.url = url


@dataclass(frozen=True)
class CoverArtImage:
    """An image downloaded from the Cover Art Archive."""

    data: bytes
    mimetype: str = ""


class CoverArtClient(Protocol):
    """Anything which can fetch the front image of a release."""

    def get_release_front(self, mbid: uuid.UUID, size: int) -> CoverArtImage:
        ...


class Finder(Protocol):
    """Anything which can find album artwork and artist images."""

    def get_front_image(self, artist: str, album: str) -> bytes:
        ...

    def get_artist_image(self, artist: str) -> bytes:
        ...


class CoverArtArchiveClient:
    """A small client for the front images of the Cover Art Archive."""

    def __init__(
        self,
        user_agent: str,
        host: str = DEFAULT_COVER_ART_ARCHIVE_HOST,
        session: requests.Session | None = None,
    ) -> None:
        self.user_agent = user_agent
        self.host = host.rstrip("/")
        self._session = session if session is not None else requests.Session()

    def get_release_front(self, mbid: uuid.UUID | str, size: int) -> CoverArtImage:
        """Return the front image of release `mbid` in the given size."""
        suffix = f"front-{size}" if size in (250, 500, 1200) else "front"
        url = f"{self.host}/release/{mbid}/{suffix}"
        resp = self._session.get(
            url, headers={"User-Agent": self.user_agent}, timeout=_REQUEST_TIMEOUT
        )
        if resp.status_code != 200:
            raise CoverArtHTTPError(resp.status_code, url)
        return CoverArtImage(
            data=resp.content, mimetype=resp.headers.get("Content-Type", "")
        )


@dataclass
class _Element:
    name: str
    attrs: dict[str, str]
    children: list[_Element] = field(default_factory=list)
    text: str = ""

    def find_all(self, name: str) -> Iterator[_Element]:
        return (child for child in self.children if child.name == name)


def _local_name(name: str) -> str:
    return name.rsplit(":", 1)[-1]


def _parse_xml(document: str | bytes, what: str) -> _Element:
    """Parse `document` leniently; namespace prefixes are dropped."""
    parser = expat.ParserCreate()
    stack: list[_Element] = []
    roots: list[_Element] = []

    def start(name: str, attrs: dict[str, str]) -> None:
        element = _Element(
            _local_name(name), {_local_name(k): v for k, v in attrs.items()}
        )
        (stack[-1].children if stack else roots).append(element)
        stack.append(element)

    def end(_name: str) -> None:
        stack.pop()

    def characters(data: str) -> None:
        if stack:
            stack[-1].text += data

    parser.StartElementHandler = start
    parser.EndElementHandler = end
    parser.CharacterDataHandler = characters
    try:
        parser.Parse(document, True)
    except expat.ExpatError as err:
        if roots and not stack:
            return roots[0]
        raise ArtError(f"decoding {what} XML API response: {err}") from err
    if not roots:
        raise ArtError(f"decoding {what} XML API response: EOF")
    return roots[0]


def _score(element: _Element, what: str) -> int:
    raw = element.attrs.get("score", "").strip()
    if not raw:
        return 0
    try:
        return int(raw)
    except ValueError as err:
        raise ArtError(
            f"decoding {what} XML API response: invalid score {raw!r}"
        ) from err


def _scored_ids(
    document: str | bytes, list_name: str, item_name: str, min_score: int, what: str
) -> list[str]:
    root = _parse_xml(document, what)
    items = [
        item
        for item_list in root.find_all(list_name)
        for item in item_list.find_all(item_name)
    ]
    if not items:
        raise ImageNotFoundError()
    ids = [item.attrs.get("id", "") for item in items if _score(item, what) >= min_score]
    if not ids:
        raise ImageNotFoundError()
    return ids


def parse_release_ids(xml_text: str | bytes, min_score: int) -> list[str]:
    """Return the release IDs of a MusicBrainz release search scoring at least `min_score`."""
    return _scored_ids(
        xml_text, "release-list", "release", min_score, "MusicBrainz release"
    )


def parse_artist_ids(xml_text: str | bytes, min_score: int) -> list[str]:
    """Return the artist IDs of a MusicBrainz artist search scoring at least `min_score`."""
    return _scored_ids(
        xml_text, "artist-list", "artist", min_score, "MusicBrainz artist search"
    )


def parse_discogs_id(xml_text: str | bytes) -> str:
    """Return the Discogs artist ID from a MusicBrainz artist with URL relations."""
    root = _parse_xml(xml_text, "MusicBrainz artist")
    for artist in root.find_all("artist"):
        for relation_list in artist.find_all("relation-list"):
            for relation in relation_list.find_all("relation"):
                if relation.attrs.get("type") != "discogs":
                    continue
                target = "".join(t.text for t in relation.find_all("target"))
                try:
                    path = urlsplit(target).path
                except ValueError as err:
                    raise ArtError(f"error parsing Discogs artist URL: {err}") from err
                discogs_id = path.removeprefix("/artist/").removesuffix("/")
                if not discogs_id:
                    raise ArtError(f"unrecognised Discogs artist URL format: {target}")
                return discogs_id
    raise _NoDiscogsRelationError()


class Client:
    """Finds album artwork and artist images. Safe for concurrent use.

    Requests to MusicBrainz are throttled: no more than one request per
    `delay` is made. Artist images need a Discogs token.
    """

    def __init__(
        self,
        user_agent: str,
        delay: float | timedelta = 1.0,
        discogs_token: str = "",
        *,
        caa_client: CoverArtClient | None = None,
        musicbrainz_api_host: str = DEFAULT_MUSICBRAINZ_API_HOST,
        discogs_api_host: str = DEFAULT_DISCOGS_API_HOST,
        session: requests.Session | None = None,
    ) -> None:
        if isinstance(delay, timedelta):
            delay = delay.total_seconds()
        self.min_score = DEFAULT_MIN_SCORE
        self.user_agent = user_agent
        self.musicbrainz_api_host = musicbrainz_api_host
        self.discogs_api_host = discogs_api_host
        self._session = session if session is not None else requests.Session()
        self.caa_client: CoverArtClient = (
            caa_client
            if caa_client is not None
            else CoverArtArchiveClient(user_agent, session=self._session)
        )
        self._discogs_token = discogs_token
        self._delay = max(float(delay), 0.0)
        self._lock = threading.Lock()
        self._next_request_at = time.monotonic() + self._delay

    @contextmanager
    def _throttled(self) -> Iterator[None]:
        with self._lock:
            wait = self._next_request_at - time.monotonic()
            if wait > 0:
                time.sleep(wait)
            try:
                yield
            finally:
                self._next_request_at = time.monotonic() + self._delay

    def _get(self, url: str, **kwargs) -> requests.Response:
        headers = {"User-Agent": self.user_agent, **kwargs.pop("headers", {})}
        return self._session.get(
            url, headers=headers, timeout=_REQUEST_TIMEOUT, **kwargs
        )

    def get_front_image(self, artist: str, album: str) -> bytes:
        """Return the front cover of `album` by `artist`."""
        for mbid_text in self._musicbrainz_release_ids(artist, album):
            try:
                mbid = uuid.UUID(mbid_text)
            except ValueError:
                continue
            try:
                image = self.caa_client.get_release_front(mbid, IMAGE_SIZE_500)
            except CoverArtHTTPError as err:
                if err.status_code == 404:
                    continue
                raise
            log.info(
                "Downloaded image for artist(%s) album(%s) with mbID %s",
                artist,
                album,
                mbid_text,
            )
            return image.data
        raise ImageNotFoundError()

    def _musicbrainz_release_ids(self, artist: str, album: str) -> list[str]:
        with self._throttled():
            resp = self._get(
                f"{self.musicbrainz_api_host}/ws/2/release/",
                params={"query": f"release:{album} AND artist:{artist}"},
            )
            if resp.status_code != 200:
                raise ArtError(
                    f"music brainz XML API returned HTTP {resp.status_code}"
                )
            return parse_release_ids(resp.content, self.min_score)

    def get_artist_image(self, artist: str) -> bytes:
        """Return an image of `artist`."""
        if not self._discogs_token:
            raise NoDiscogsAuthError()

        discogs_id = ""
        tries = 0
        for mbid in self._musicbrainz_artist_ids(artist):
            if tries >= _MAX_DISCOGS_ID_TRIES:
                raise ImageNotFoundError()
            try:
                discogs_id = self._discogs_artist_id(mbid)
            except _NoDiscogsRelationError:
                tries += 1
                continue
            break

        if not discogs_id:
            raise ImageNotFoundError()
        return self._discogs_artist_image(discogs_id)

    def _musicbrainz_artist_ids(self, artist: str) -> list[str]:
        with self._throttled():
            resp = self._get(
                f"{self.musicbrainz_api_host}/ws/2/artist/",
                params={"query": f"artist:{artist}"},
            )
            if resp.status_code != 200:
                raise ArtError(
                    f"artist search XML API (MusicBrainz) returned HTTP {resp.status_code}"
                )
            return parse_artist_ids(resp.content, self.min_score)

    def _discogs_artist_id(self, artist_mbid: str) -> str:
        with self._throttled():
            resp = self._get(
                f"{self.musicbrainz_api_host}/ws/2/artist/"
                f"{quote(artist_mbid, safe='')}?inc=url-rels"
            )
            if resp.status_code != 200:
                raise ArtError(
                    f"artist XML API (MusicBrainz) returned HTTP {resp.status_code}"
                )
            return parse_discogs_id(resp.content)

    def _discogs_artist_image(self, discogs_id: str) -> bytes:
        # Not throttled: these calls always follow throttled MusicBrainz calls.
        resp = self._get(
            f"{self.discogs_api_host}/artists/{quote(discogs_id, safe='')}",
            headers={"Authorization": f"Discogs token={self._discogs_token}"},
        )
        if resp.status_code != 200:
            raise ArtError(
                f"artist XML API (Discogs) returned HTTP {resp.status_code}"
            )
        try:
            document = resp.json()
            images = document.get("images") or []
            uris = [image.get("uri") or "" for image in images]
        except (ValueError, AttributeError, TypeError) as err:
            raise ArtError(f"unrecognised JSON returned by Discogs: {err}") from err

        for uri in uris:
            if not uri:
                continue
            try:
                return self._download_discogs_image(uri)
            except requests.Timeout:
                raise
            except (
                requests.RequestException,
                ImageNotFoundError,
                ImageTooBigError,
            ) as err:
                log.warning("error downloading Discogs image: %s", err)
        raise ImageNotFoundError()

    def _download_discogs_image(self, url: str) -> bytes:
        with self._get(url, stream=True) as resp:
            if resp.status_code != 200:
                raise ImageNotFoundError()
            data = bytearray()
            for chunk in resp.iter_content(chunk_size=64 * 1024):
                data += chunk
                if len(data) >= _DISCOGS_IMAGE_LIMIT:
                    raise ImageTooBigError()
        return bytes(data)