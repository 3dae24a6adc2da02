# euterpe

The core pieces of a self-hosted music library server: reading the user
configuration, small path and file-name helpers, the library's value types,
and finding, caching and serving album covers and artist images.

## Modules

- `euterpe.config` reads the user's configuration file and merges it over
  the defaults held by the frozen dataclass `Config` (with `Cert`, `Auth` and
  `ScanSection` for its nested sections).
  - `find_and_parse(home=None, config_name="config.json")` returns a
    `Config`. When the file is missing it is created first, with the listen
    address `localhost:9996`, a library at `<home>/Music` and a random
    128-character hex secret.
  - `user_config_path(home=None, config_name="config.json")` returns the
    absolute path of `config_name` when a file of that name exists in the
    working directory, and otherwise `config_name` inside the directory given
    by `euterpe.helpers.project_user_path`.
  - `parse_config(data, base=None)` merges an already decoded JSON document
    over `base` (or the defaults). Keys match without regard to case and
    unknown keys are ignored.
  - `parse_scan_section(data)` builds a `ScanSection` from the
    `library_scan` object; a negative `files_per_operation` is refused.
  - `parse_duration(text)` understands durations such as `"15ms"`,
    `"1m30s"`, `"1.5h"` or `"-2h45m"` and returns a `datetime.timedelta`.
  - Decoding problems raise `ConfigError` (a `ValueError`).
- `euterpe.helpers`
  - `absolute_path(path, relative_root)`
  - `project_user_path(home=None)` returns `<home>/.euterpe` (`euterpe` on
    Windows), creating it; an existing legacy `.httpms` (`httpms`) directory
    wins over it.
  - `set_logs_file(log_file_path)` sends the root logger's records to a file,
    appending, and replaces the handler of an earlier call.
  - `set_up_pid_file(pid_file)` and `remove_pid_file(pid_file)`.
  - `guess_track_number(track_file_path)` guesses a track number from a file
    name and returns 0 when unsure.
  - `STOP_SIGNALS` lists the signals that should end a long-running process.
- `euterpe.models` holds `SearchResult` (also named `TrackInfo`),
  `SearchArgs`, `Artist`, `Album`, `Favourites`, `BrowseArgs`, the enums
  `BrowseOrder`, `BrowseOrderBy` and `ImageSize` (`ORIGINAL`, `SMALL`),
  `NOT_FOUND_CACHE_TTL` (seven days) and `media_format_from_file_name(path)`.
  `SearchResult`, `Artist` and `Album` have `to_json_dict()`, which leaves
  out optional fields that are zero.
- `euterpe.art` finds images on the internet.
  - `Client(user_agent, delay=1.0, discogs_token="")` has
    `get_front_image(artist, album)`, which asks MusicBrainz for matching
    releases and the Cover Art Archive for their front image, and
    `get_artist_image(artist)`, which goes from MusicBrainz to Discogs and
    needs a Discogs token. Only results whose MusicBrainz score is at least
    `client.min_score` (95 by default) are used, and MusicBrainz requests are
    made no more often than once per `delay` seconds.
  - `CoverArtArchiveClient` fetches release front images on its own.
  - `parse_release_ids`, `parse_artist_ids` and `parse_discogs_id` read
    MusicBrainz XML responses.
- `euterpe.database` has `DatabaseWorker`, a thread owning one SQLite
  connection. `execute(job)` runs a callable taking the connection and
  returns its result or raises its error; `submit(job)` queues one without
  waiting and only logs its errors; `close()` stops the thread. It is also a
  context manager.
- `euterpe.artwork` has `AlbumArtworkStore`, and `euterpe.artist_images` has
  `ArtistImageStore`. Each offers `find_and_save(id, size)`, returning the
  image bytes, `save(id, stream)` for uploads (refused from 5 MiB on, or when
  empty) and `remove(id)`. Album covers are looked up in the database, then
  in the album's directory (`select_artwork` and
  `find_artwork_in_directory` choose the file), then on the internet; artist
  images in the database, then on the internet. What is found is stored; a
  small image is made from the original with the store's scaler, 60 pixels
  wide; and a "nothing found" answer is kept for seven days, during which
  the internet is not asked again.

## Examples

```python
from euterpe.helpers import guess_track_number

guess_track_number("Iron Maiden - 7 - Quest For Fire.mp3")   # 7
guess_track_number("METALLICA - (04) One.mp3")               # 4
guess_track_number("Blur - Song 2.mp3")                      # 0, too uncertain
```

```python
from euterpe.models import media_format_from_file_name

media_format_from_file_name("song.FLAC")     # "flac"
media_format_from_file_name("no_extension")  # "mp3"
```

```python
from pathlib import Path
from euterpe.config import find_and_parse

cfg = find_and_parse(Path.home(), "config.json")
print(cfg.listen, cfg.libraries, cfg.library_scan.initial_wait)
```

```python
from euterpe.art import Client, ImageNotFoundError

client = Client("my-player/1.0", delay=1.0, discogs_token="token")
try:
    cover = client.get_front_image("Iron Maiden", "Killers")
except ImageNotFoundError:
    cover = None
```

Serving album covers from a database:

```python
from euterpe.database import DatabaseWorker
from euterpe.artwork import AlbumArtworkStore
from euterpe.models import ImageSize

with DatabaseWorker("library.db") as db:
    store = AlbumArtworkStore(db, album_path=lambda album_id: "/music/killers",
                              finder=client, scaler=my_scaler)
    thumbnail = store.find_and_save(1, ImageSize.SMALL)
```

`my_scaler` is any object with a `scale(data, width)` method returning the
resized image bytes.

## Errors

- `euterpe.art`: `ImageNotFoundError`, `ImageTooBigError`,
  `NoDiscogsAuthError`, `CoverArtHTTPError` and `ArtError` for unexpected
  answers from a remote service.
- `euterpe.artwork`: `ArtworkNotFoundError` (and its
  `CachedArtworkNotFoundError`), `ArtworkError` and `ArtworkTooBigError`,
  `AlbumNotFoundError`, `ArtistNotFoundError`.
- `euterpe.database`: `DatabaseClosedError`.
- `euterpe.config`: `ConfigError`.

## What this package does not do

- It has no command and no HTTP server; nothing here listens on the
  configured address or serves the API.
- It does not scan directories, read tags from media files, watch for
  changes or search the library.
- It does not create the database schema. The stores expect the tables
  `albums_artworks` (`album_id` unique, `artwork_cover`,
  `artwork_cover_small`, `updated_at`), `artists_images` (`artist_id`
  unique, `image`, `image_small`, `updated_at`), `albums` (`id`, `name`),
  `artists` (`id`, `name`) and `tracks` (`album_id`, `artist_id`) to exist.
- It does not resize images itself; a scaler has to be given to the stores
  for small images.

## Running the tests

Install the `test` extra and run `pytest` from the project directory.