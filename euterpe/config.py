"""Finding, parsing and merging the user configuration with the defaults.

The user configuration lives in ``config.json`` inside the directory returned
by :func:`euterpe.helpers.project_user_path`, unless a file of the configured
name exists in the working directory.
"""

from __future__ import annotations

import json
import os
import re
import secrets
from dataclasses import dataclass, field, replace
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable

from euterpe.helpers import project_user_path

DEFAULT_CONFIG_NAME = "config.json"
DEFAULT_LISTEN_ADDRESS = "localhost:9996"
_DEFAULT_SECRET_BYTES = 64

_INT64_MAX = 2**63 - 1


class ConfigError(ValueError):
    """The configuration could not be decoded."""


@dataclass(frozen=True)
class Cert:
    """TLS certificate settings."""

    crt: str = ""
    key: str = ""


@dataclass(frozen=True)
class Auth:
    """Authentication settings."""

    user: str = ""
    password: str = ""
    secret: str = ""


@dataclass(frozen=True)
class ScanSection:
    """Library scanning settings."""

    disable: bool = False
    files_per_operation: int = 0
    sleep_per_operation: timedelta = timedelta(0)
    initial_wait: timedelta = timedelta(0)


@dataclass(frozen=True)
class Config:
    """The whole server configuration. Field defaults are the server defaults."""

    listen: str = DEFAULT_LISTEN_ADDRESS
    ssl: bool = False
    ssl_certificate: Cert = field(default_factory=Cert)
    auth: bool = False
    authenticate: Auth = field(default_factory=Auth)
    libraries: tuple[str, ...] = ()
    library_scan: ScanSection = field(default_factory=ScanSection)
    log_file: str = "euterpe.log"
    sqlite_database: str = "euterpe.db"
    gzip: bool = True
    read_timeout: int = 15
    write_timeout: int = 1200
    max_headers_size: int = 1048576
    download_artwork: bool = False
    discogs_auth_token: str = ""
    access_log: bool = False


_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}

_DURATION_COMPONENT = re.compile(r"(\d*)(\.\d*)?([^\d.]*)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as "300ms", "1.5h" or "2h45m"."""
    invalid = ValueError(f'time: invalid duration "{text}"')
    rest = text
    negative = False
    if rest[:1] in ("+", "-"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise invalid

    total = Decimal(0)
    while rest:
        matched = _DURATION_COMPONENT.match(rest)
        whole, fraction, unit = matched.groups()
        if not whole and (fraction is None or fraction == "."):
            raise invalid
        if not unit:
            raise ValueError(f'time: missing unit in duration "{text}"')
        if unit not in _DURATION_UNITS:
            raise ValueError(f'time: unknown unit "{unit}" in duration "{text}"')
        number = Decimal((whole or "0") + (fraction or ""))
        total += number * _DURATION_UNITS[unit]
        rest = rest[matched.end():]

    nanoseconds = int(total)
    if nanoseconds > _INT64_MAX:
        raise invalid
    microseconds = nanoseconds // 1000
    return timedelta(microseconds=-microseconds if negative else microseconds)


def parse_scan_section(data: Any) -> ScanSection:
    """Build a ScanSection from the decoded "library_scan" JSON object."""
    return _parse_scan_section(data, ScanSection())


def parse_config(data: Any, base: Config | None = None) -> Config:
    """Merge the decoded JSON document `data` on top of `base`."""
    return _merge(data, base if base is not None else Config(), _CONFIG_FIELDS)


def user_config_path(
    home: str | os.PathLike[str] | None = None,
    config_name: str = DEFAULT_CONFIG_NAME,
) -> Path:
    """Return the full path of the user's configuration file."""
    if Path(config_name).is_file():
        return Path(os.path.abspath(config_name))
    return project_user_path(home) / config_name


def find_and_parse(
    home: str | os.PathLike[str] | None = None,
    config_name: str = DEFAULT_CONFIG_NAME,
) -> Config:
    """Find the user configuration, creating it when missing, and parse it."""
    path = user_config_path(home, config_name)
    if not path.is_file():
        _write_default_user_config(path, home)

    text = path.read_text(encoding="utf-8")
    try:
        data, _ = json.JSONDecoder().raw_decode(text.lstrip())
    except json.JSONDecodeError as err:
        raise ConfigError(f"decoding config: {err}") from err

    try:
        return parse_config(data)
    except ConfigError as err:
        raise ConfigError(f"decoding config: {err}") from err


def _write_default_user_config(
    path: Path, home: str | os.PathLike[str] | None
) -> None:
    if home is not None:
        home_dir = Path(home)
    else:
        try:
            home_dir = Path.home()
        except RuntimeError:
            home_dir = Path("~")

    document = {
        "listen": DEFAULT_LISTEN_ADDRESS,
        "ssl_certificate": {},
        "authentication": {"secret": secrets.token_hex(_DEFAULT_SECRET_BYTES)},
        "libraries": [str(home_dir / "Music")],
        "library_scan": {},
    }
    path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")


def _json_type(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _type_error(value: Any, key: str, expected: str) -> ConfigError:
    return ConfigError(
        f"cannot unmarshal {_json_type(value)} into field {key} of type {expected}"
    )


def _string(value: Any, key: str, current: str) -> str:
    if value is None:
        return current
    if not isinstance(value, str):
        raise _type_error(value, key, "string")
    return value


def _boolean(value: Any, key: str, current: bool) -> bool:
    if value is None:
        return current
    if not isinstance(value, bool):
        raise _type_error(value, key, "bool")
    return value


def _integer(value: Any, key: str, current: int) -> int:
    if value is None:
        return current
    if isinstance(value, bool) or not isinstance(value, int):
        raise _type_error(value, key, "int")
    if not -_INT64_MAX - 1 <= value <= _INT64_MAX:
        raise ConfigError(f"number {value} overflows field {key}")
    return value


def _libraries(value: Any, key: str, current: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise _type_error(value, key, "[]string")
    return tuple(_string(item, key, "") for item in value)


def _cert(value: Any, key: str, current: Cert) -> Cert:
    return _merge(value, current, _CERT_FIELDS)


def _auth(value: Any, key: str, current: Auth) -> Auth:
    return _merge(value, current, _AUTH_FIELDS)


def _scan(value: Any, key: str, current: ScanSection) -> ScanSection:
    if value is None:
        return current
    return _parse_scan_section(value, current)


def _parse_scan_section(data: Any, base: ScanSection) -> ScanSection:
    if data is None:
        return base
    if not isinstance(data, dict):
        raise _type_error(data, "library_scan", "object")
    values = {key.lower(): value for key, value in data.items()}

    disable = _boolean(values.get("disable"), "disable", False)
    files = _integer(values.get("files_per_operation"), "files_per_operation", 0)
    sleep_text = _string(values.get("sleep_after_operation"), "sleep_after_operation", "")
    wait_text = _string(values.get("initial_wait_duration"), "initial_wait_duration", "")

    try:
        sleep = parse_duration(sleep_text) if sleep_text else base.sleep_per_operation
        wait = parse_duration(wait_text) if wait_text else base.initial_wait
    except ValueError as err:
        raise ConfigError(str(err)) from err

    if files < 0:
        raise ConfigError("files_per_operation must be a positive integer")

    return ScanSection(
        disable=disable,
        files_per_operation=files,
        sleep_per_operation=sleep,
        initial_wait=wait,
    )


_Field = tuple[str, str, Callable[[Any, str, Any], Any]]

_CERT_FIELDS: tuple[_Field, ...] = (
    ("crt", "crt", _string),
    ("key", "key", _string),
)

_AUTH_FIELDS: tuple[_Field, ...] = (
    ("user", "user", _string),
    ("password", "password", _string),
    ("secret", "secret", _string),
)

_CONFIG_FIELDS: tuple[_Field, ...] = (
    ("listen", "listen", _string),
    ("ssl", "ssl", _boolean),
    ("ssl_certificate", "ssl_certificate", _cert),
    ("basic_authenticate", "auth", _boolean),
    ("authentication", "authenticate", _auth),
    ("libraries", "libraries", _libraries),
    ("library_scan", "library_scan", _scan),
    ("log_file", "log_file", _string),
    ("sqlite_database", "sqlite_database", _string),
    ("gzip", "gzip", _boolean),
    ("read_timeout", "read_timeout", _integer),
    ("write_timeout", "write_timeout", _integer),
    ("max_header_bytes", "max_headers_size", _integer),
    ("download_artwork", "download_artwork", _boolean),
    ("discogs_auth_token", "discogs_auth_token", _string),
    ("access_log", "access_log", _boolean),
)


def _merge(data: Any, base: Any, fields: tuple[_Field, ...]) -> Any:
    """Overwrite the attributes of `base` with the matching keys of `data`.

    Keys are matched without regard to case; unknown keys are ignored.
    """
    if data is None:
        return base
    if not isinstance(data, dict):
        raise _type_error(data, type(base).__name__, "object")

    lookup = {json_key.lower(): (json_key, attr, convert) for json_key, attr, convert in fields}
    changes: dict[str, Any] = {}
    for key, value in data.items():
        entry = lookup.get(key.lower())
        if entry is None:
            continue
        json_key, attr, convert = entry
        current = changes.get(attr, getattr(base, attr))
        changes[attr] = convert(value, json_key, current)
    return replace(base, **changes)