import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from typing import Dict, List
from urllib.parse import quote_plus
from xml.sax.saxutils import escape

import httpx
import pytest
import pytest_asyncio

from s3vstore import S3VersionedClient
from s3vstore.credentials import StaticProvider

BUCKET = "test-bucket"
ENDPOINT = "http://s3.local:9000"
EMPTY_SHA256 = hashlib.sha256(b"").hexdigest()

OBJECT_HEADERS = (
    "content-type",
    "content-disposition",
    "content-encoding",
    "content-language",
    "cache-control",
)


@dataclass
class StoredVersion:
    key: str
    version_id: str
    seq: int
    mtime: datetime
    content: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    acl: str | None = None
    delete_marker: bool = False

    @property
    def etag(self) -> str:
        return hashlib.md5(self.content).hexdigest()


@dataclass
class FailureRule:
    calls: set
    status: int = 503
    code: str = "SlowDown"
    truncate: bool = False


class FakeVersionedStore:
    """
    In-memory versioned bucket speaking enough of the S3 REST API for tests.
    """

    def __init__(self, bucket: str = BUCKET):
        self.bucket = bucket
        self.versions: List[StoredVersion] = []
        self.calls: Dict[str, int] = {}
        self.requests: List[httpx.Request] = []
        self.rules: Dict[str, FailureRule] = {}
        self._seq = 0
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)
        # Some S3-compatible stores ignore encoding-type=url.
        self.url_encoding = True

    # -- test helpers -------------------------------------------------------

    def add(self, key: str, content: bytes = b"", **headers) -> StoredVersion:
        self._seq += 1
        self._clock += timedelta(seconds=1)
        version = StoredVersion(
            key=key,
            version_id=f"v{self._seq:04d}",
            seq=self._seq,
            mtime=self._clock,
            content=content,
            headers={k.replace("_", "-"): v for k, v in headers.items()},
        )
        self.versions.append(version)
        return version

    def fail(self, action: str, *calls: int, status: int = 503, code="SlowDown"):
        """Fail the given (1-based) calls of `action`."""
        self.rules[action] = FailureRule(set(calls), status=status, code=code)

    def truncate(self, action: str, *calls: int):
        """Answer the given calls of `action` with a short body."""
        self.rules[action] = FailureRule(set(calls), truncate=True)

    def call_count(self, action: str) -> int:
        return self.calls.get(action, 0)

    def live_versions(self, key: str) -> List[StoredVersion]:
        return [v for v in self.versions if v.key == key and not v.delete_marker]

    # -- S3 semantics -------------------------------------------------------

    def _latest(self, key: str) -> StoredVersion | None:
        entries = [v for v in self.versions if v.key == key]
        return max(entries, key=lambda v: v.seq) if entries else None

    def _find(self, key: str, version_id: str | None) -> StoredVersion | None:
        if version_id is None:
            latest = self._latest(key)
            if latest is None or latest.delete_marker:
                return None
            return latest
        for version in self.versions:
            if version.key == key and version.version_id == version_id:
                return None if version.delete_marker else version
        return None

    def _error(self, status: int, code: str, message: str = "") -> httpx.Response:
        body = (
            '<?xml version="1.0" encoding="UTF-8"?>'
            f"<Error><Code>{code}</Code><Message>{message}</Message></Error>"
        )
        return httpx.Response(status, content=body.encode())

    def _object_headers(self, version: StoredVersion) -> Dict[str, str]:
        headers = dict(version.headers)
        headers["ETag"] = f'"{version.etag}"'
        headers["Last-Modified"] = format_datetime(version.mtime, usegmt=True)
        headers["x-amz-version-id"] = version.version_id
        headers["Content-Length"] = str(len(version.content))
        return headers

    def _action(self, request: httpx.Request, key: str) -> str:
        if not key:
            return "ListObjectVersions"
        return {
            "PUT": "PutObject",
            "GET": "GetObject",
            "HEAD": "HeadObject",
            "DELETE": "DeleteObject",
        }[request.method]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        assert request.headers["authorization"].startswith("AWS4-HMAC-SHA256 ")
        assert request.headers["x-amz-content-sha256"] == hashlib.sha256(
            request.content
        ).hexdigest()

        bucket, _, key = request.url.path.lstrip("/").partition("/")
        if bucket != self.bucket:
            return self._error(404, "NoSuchBucket")

        action = self._action(request, key)
        self.calls[action] = self.calls.get(action, 0) + 1

        rule = self.rules.get(action)
        truncate = False
        if rule is not None and self.calls[action] in rule.calls:
            if not rule.truncate:
                return self._error(rule.status, rule.code, "Injected failure")
            truncate = True

        params = request.url.params
        version_id = params.get("versionId")

        if action == "ListObjectVersions":
            return self._list(params)

        if action == "PutObject":
            version = self.add(key, request.content)
            version.headers = {
                name: value
                for name, value in request.headers.items()
                if name in OBJECT_HEADERS or name.startswith("x-amz-meta-")
            }
            version.acl = request.headers.get("x-amz-acl")
            return httpx.Response(
                200,
                headers={
                    "ETag": f'"{version.etag}"',
                    "x-amz-version-id": version.version_id,
                },
            )

        if action == "DeleteObject":
            if version_id is None:
                marker = self.add(key)
                marker.delete_marker = True
            else:
                self.versions = [
                    v
                    for v in self.versions
                    if not (v.key == key and v.version_id == version_id)
                ]
            return httpx.Response(204)

        version = self._find(key, version_id)
        if version is None:
            if request.method == "HEAD":
                return httpx.Response(404)
            return self._error(404, "NoSuchKey", "The specified key does not exist.")

        headers = self._object_headers(version)
        if request.method == "HEAD":
            return httpx.Response(200, headers=headers)

        content = version.content
        if truncate:
            content = content[: len(content) // 2]
        return httpx.Response(200, headers=headers, stream=httpx.ByteStream(content))

    def _list(self, params) -> httpx.Response:
        prefix = params.get("prefix", "")
        max_keys = int(params.get("max-keys", "1000"))
        encode = self.url_encoding and params.get("encoding-type") == "url"
        key_marker = params.get("key-marker")
        version_id_marker = params.get("version-id-marker")

        entries = sorted(
            (v for v in self.versions if v.key.startswith(prefix)),
            key=lambda v: (v.key, -v.seq),
        )
        start = 0
        if key_marker is not None:
            for i, entry in enumerate(entries):
                if entry.key == key_marker and entry.version_id == version_id_marker:
                    start = i + 1
                    break
            else:
                start = len([e for e in entries if e.key <= key_marker])

        page = entries[start : start + max_keys]
        truncated = start + max_keys < len(entries)

        def enc(value: str) -> str:
            return escape(quote_plus(value, safe="/") if encode else value)

        parts = [
            '<?xml version="1.0" encoding="UTF-8"?>',
            '<ListVersionsResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">',
            f"<Name>{self.bucket}</Name>",
            f"<Prefix>{enc(prefix)}</Prefix>",
            f"<MaxKeys>{max_keys}</MaxKeys>",
        ]
        if encode:
            parts.append("<EncodingType>url</EncodingType>")
        parts.append(f"<IsTruncated>{'true' if truncated else 'false'}</IsTruncated>")
        if truncated:
            parts.append(f"<NextKeyMarker>{enc(page[-1].key)}</NextKeyMarker>")
            parts.append(
                f"<NextVersionIdMarker>{page[-1].version_id}</NextVersionIdMarker>"
            )
        for entry in page:
            is_latest = self._latest(entry.key) is entry
            tag = "DeleteMarker" if entry.delete_marker else "Version"
            parts.append(f"<{tag}>")
            parts.append(f"<Key>{enc(entry.key)}</Key>")
            parts.append(f"<VersionId>{entry.version_id}</VersionId>")
            parts.append(f"<IsLatest>{'true' if is_latest else 'false'}</IsLatest>")
            parts.append(
                "<LastModified>"
                f"{entry.mtime.strftime('%Y-%m-%dT%H:%M:%S.000Z')}"
                "</LastModified>"
            )
            if not entry.delete_marker:
                parts.append(f"<ETag>&quot;{entry.etag}&quot;</ETag>")
                parts.append(f"<Size>{len(entry.content)}</Size>")
                parts.append("<StorageClass>STANDARD</StorageClass>")
            parts.append(f"</{tag}>")
        parts.append("</ListVersionsResult>")

        return httpx.Response(200, content="".join(parts).encode())


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)


@pytest.fixture
def store():
    return FakeVersionedStore()


@pytest_asyncio.fixture
async def make_client(store):
    clients = []

    async def factory(**kwargs) -> S3VersionedClient:
        kwargs.setdefault("bucket", store.bucket)
        kwargs.setdefault("endpoint", ENDPOINT)
        kwargs.setdefault(
            "credential_providers",
            [StaticProvider(access_key="AKIDEXAMPLE", secret_key="secret")],
        )
        client = S3VersionedClient(**kwargs)
        await client.connect(transport=httpx.MockTransport(store.handle))
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.disconnect()
