import posixpath
from datetime import datetime, timezone
from email.header import Header, decode_header, make_header
from email.utils import parsedate_to_datetime
from urllib.parse import unquote_plus

from httpx import Headers

from .models import S3Object

METADATA_HEADER_PREFIX = "x-amz-meta-"


def strong_etag(etag: str | None) -> str | None:
    """
    Normalize an ETag to its bare fingerprint.

    Drops the weak marker and quoting: `W/"abc"` and `"abc"` both become
    `abc`. A multipart suffix such as `-3` is part of the fingerprint and is
    kept.
    """
    if etag is None:
        return None
    etag = etag.strip()
    if etag.startswith("W/"):
        etag = etag[2:]

    return etag.strip('"')


def decode_key(key: str) -> str:
    # S3 url encoding writes spaces as "+"
    return unquote_plus(key)


def join_key(prefix: str, key: str) -> str:
    if not prefix:
        return posixpath.normpath(key) if key else key
    return posixpath.normpath(posixpath.join(prefix, key))


def parse_timestamp(value: str) -> datetime:
    for fmt in ("%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%dT%H:%M:%SZ"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue

    raise ValueError(f"Unrecognized timestamp {value!r}")


def parse_http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    return parsedate_to_datetime(value).astimezone(timezone.utc)


def encode_header_value(value: str) -> str:
    """
    Make a metadata value safe for an HTTP header.

    Non-ASCII values are sent as a single RFC 2047 encoded word, the form S3
    itself uses when it returns such values.
    """
    if value.isascii():
        return value
    return Header(value, "utf-8").encode(maxlinelen=0)


def decode_header_value(value: str) -> str:
    if not value.startswith("=?"):
        return value
    return str(make_header(decode_header(value)))


def object_headers(obj: S3Object) -> dict[str, str | None]:
    headers = {
        "Content-Type": obj.content_type,
        "Content-Disposition": obj.content_disposition,
        "Content-Encoding": obj.content_encoding,
        "Content-Language": obj.content_language,
        "Cache-Control": obj.cache_control,
        "x-amz-acl": obj.acl,
    }
    for name, value in (obj.metadata or {}).items():
        if not name or not name.isascii() or any(c.isspace() for c in name):
            raise ValueError(f"Invalid metadata key {name!r}")
        headers[f"{METADATA_HEADER_PREFIX}{name}"] = encode_header_value(value)

    return headers


def apply_response_headers(obj: S3Object, headers: Headers):
    obj.content_type = headers.get("content-type")
    obj.content_disposition = headers.get("content-disposition")
    obj.content_encoding = headers.get("content-encoding")
    obj.content_language = headers.get("content-language")
    obj.cache_control = headers.get("cache-control")
    obj.etag = strong_etag(headers.get("etag"))
    obj.mtime = parse_http_date(headers.get("last-modified"))
    obj.metadata = {
        name[len(METADATA_HEADER_PREFIX) :]: decode_header_value(value)
        for name, value in headers.items()
        if name.startswith(METADATA_HEADER_PREFIX)
    }
