import asyncio
import contextlib
import io
from typing import AsyncIterator, List

import aiofiles
import aiofiles.os
from bs4 import BeautifulSoup, Tag
from httpx import Headers, Response
from structlog import get_logger

from s3vstore.core import AwsClient
from s3vstore.credentials import CredentialsProvider
from s3vstore.enums import Service
from s3vstore.exceptions import IncompleteBodyError, S3ResponseError
from s3vstore.ratelimit import (
    RateLimitedWriter,
    RateLimiter,
    UnlimitedRateLimiter,
    limit_reader,
    new_rate_limiter,
)
from s3vstore.retry import RetryPolicy, ShouldRetry

from .models import ListCursor, S3ListObjectVersionsRes, S3Object
from .utils import (
    apply_response_headers,
    decode_key,
    join_key,
    object_headers,
    parse_timestamp,
    strong_etag,
)

logger = get_logger()


def _child_text(el: Tag, name: str) -> str | None:
    child = el.find(name, recursive=False)
    if isinstance(child, Tag):
        return child.text
    return None


class S3VersionedClient(AwsClient):
    """
    Client for a versioned S3 bucket.

    Lists every version of every key under `prefix` and reads, writes and
    deletes single object versions. Every remote call goes through
    `retry_policy`; object bodies go through `rate_limiter`.
    """

    def __init__(
        self,
        *,
        bucket: str,
        region: str = "us-east-1",
        access_key: str = "",
        secret_key: str = "",
        endpoint: str | None = None,
        prefix: str = "",
        page_size: int = 1000,
        retry_count: int = 0,
        retry_interval: float = 0.0,
        should_retry: ShouldRetry | None = None,
        credential_providers: List[CredentialsProvider] | None = None,
    ):
        super().__init__(
            access_key=access_key,
            secret_key=secret_key,
            region=region,
            service=Service.S3,
            endpoint=endpoint or f"https://s3.{region}.amazonaws.com",
            credential_providers=credential_providers,
        )
        if page_size <= 0:
            raise ValueError("page_size must be positive")

        self.bucket = bucket
        self.prefix = prefix
        self.page_size = page_size
        self.retry_policy = RetryPolicy(
            retry_count=retry_count,
            retry_interval=retry_interval,
            should_retry=should_retry,
        )
        self.rate_limiter: RateLimiter = UnlimitedRateLimiter()

    def set_cancel_event(self, event: asyncio.Event | None):
        super().set_cancel_event(event)
        self.retry_policy.cancel_event = event

    def set_rate_limit(self, bytes_per_second: int):
        """
        Limit object body transfers of this client to `bytes_per_second`.

        The limit is shared by all concurrent operations of the client.
        """
        self.rate_limiter = new_rate_limiter(bytes_per_second)

    def _object_endpoint(self, key: str) -> str:
        return f"/{self.bucket}/{key}"

    async def _raise_for_status(self, res: Response, context: str):
        if res.is_success:
            return

        await res.aread()
        code = res.reason_phrase.replace(" ", "")
        message = ""
        if res.content:
            soup = BeautifulSoup(res.content.decode(errors="replace"), "xml")
            code_el = soup.find("Code")
            if isinstance(code_el, Tag):
                code = code_el.text
            message_el = soup.find("Message")
            if isinstance(message_el, Tag):
                message = message_el.text

        raise S3ResponseError(
            res.status_code, res.reason_phrase, context, code=code, message=message
        )

    async def _drain(self, res: Response, writer: RateLimitedWriter, context: str):
        async def copy():
            async for chunk in res.aiter_raw():
                await writer.write(chunk)

        await self._run_cancellable(context, copy())

        content_length = res.headers.get("content-length")
        if content_length is not None and int(content_length) != writer.written:
            raise IncompleteBodyError(int(content_length), writer.written, context)

    async def list_object_versions(
        self, cursor: ListCursor | None = None, *, max_keys: int | None = None
    ) -> S3ListObjectVersionsRes:
        """
        Fetch one page of object versions starting at `cursor`.

        https://docs.aws.amazon.com/AmazonS3/latest/API/API_ListObjectVersions.html
        """
        cursor = cursor or ListCursor()

        res = await self._make_request(
            method="GET",
            action="ListObjectVersions",
            endpoint=f"/{self.bucket}",
            params={
                "versions": "",
                "prefix": self.prefix or None,
                "max-keys": max_keys or self.page_size,
                "encoding-type": "url",
                "key-marker": cursor.key_marker,
                "version-id-marker": cursor.version_id_marker,
            },
        )
        await self._raise_for_status(
            res, context=f"ListObjectVersions {self.bucket}/{self.prefix}"
        )

        soup = BeautifulSoup(res.content.decode(), "xml")
        root = soup.find("ListVersionsResult")
        assert isinstance(root, Tag), "Unexpected ListObjectVersions response"

        url_encoded = _child_text(root, "EncodingType") == "url"

        def decode(value: str | None) -> str | None:
            if value is None or not url_encoded:
                return value
            return decode_key(value)

        s3_objects = []
        for version_el in root.find_all("Version", recursive=False):
            key = decode(_child_text(version_el, "Key"))
            assert key is not None, "Version entry without key"

            last_modified = _child_text(version_el, "LastModified")
            s3_object = S3Object(
                key=key,
                version_id=_child_text(version_el, "VersionId"),
                etag=strong_etag(_child_text(version_el, "ETag")),
                mtime=parse_timestamp(last_modified) if last_modified else None,
                is_latest=_child_text(version_el, "IsLatest") == "true",
            )
            s3_objects.append(s3_object)

        s3_list_object_versions_res = S3ListObjectVersionsRes(
            versions=s3_objects,
            is_truncated=_child_text(root, "IsTruncated") == "true",
            next_key_marker=decode(_child_text(root, "NextKeyMarker")),
            next_version_id_marker=_child_text(root, "NextVersionIdMarker"),
        )

        return s3_list_object_versions_res

    async def list_versions(
        self, cursor: ListCursor | None = None
    ) -> AsyncIterator[S3Object]:
        """
        Yield every version under the prefix, page by page.

        The cursor moves past a page only once all of its versions have been
        yielded. A failed page request restarts the listing from the cursor,
        so versions of a partially delivered page may be yielded twice.
        """
        cursor = cursor if cursor is not None else ListCursor()

        async for attempt in self.retry_policy.attempts("ListObjectVersions"):
            with attempt:
                while not cursor.exhausted:
                    page = await self.list_object_versions(cursor)
                    for s3_object in page.versions:
                        yield s3_object
                    cursor.advance(page)

        logger.debug("Listing bucket finished", bucket=self.bucket, prefix=self.prefix)

    async def list_into(
        self, queue: "asyncio.Queue[S3Object]", cursor: ListCursor | None = None
    ):
        async for s3_object in self.list_versions(cursor):
            await queue.put(s3_object)

    async def put_object(self, obj: S3Object):
        """
        Upload `obj.content` under the prefix as the new latest version.

        `obj.version_id` is ignored.
        """
        data = obj.content or b""
        key = join_key(self.prefix, obj.key)
        headers = object_headers(obj)

        async def upload():
            res = await self._make_request(
                method="PUT",
                action="PutObject",
                endpoint=self._object_endpoint(key),
                extra_headers=headers,
                data=data,
                body=limit_reader(data, self.rate_limiter),
            )
            await self._raise_for_status(res, context=f"PutObject {key}")

        await self.retry_policy.call("PutObject", upload)

    async def get_object_content(self, obj: S3Object):
        """
        Read content and metadata of `obj.key` at `obj.version_id`.
        """
        context = f"GetObject {obj.key}"

        async def download() -> tuple[Headers, bytes]:
            res = await self._make_request(
                method="GET",
                action="GetObject",
                endpoint=self._object_endpoint(obj.key),
                params={"versionId": obj.version_id},
                stream=True,
            )
            try:
                await self._raise_for_status(res, context=context)
                buffer = io.BytesIO()
                writer = RateLimitedWriter(buffer, self.rate_limiter)
                await self._drain(res, writer, context)
            finally:
                await res.aclose()

            return res.headers, buffer.getvalue()

        headers, content = await self.retry_policy.call("GetObject", download)

        apply_response_headers(obj, headers)
        obj.content = content

    async def get_object_meta(self, obj: S3Object):
        """
        Read metadata of `obj.key` at `obj.version_id` without its content.
        """

        async def head() -> Headers:
            res = await self._make_request(
                method="HEAD",
                action="HeadObject",
                endpoint=self._object_endpoint(obj.key),
                params={"versionId": obj.version_id},
            )
            await self._raise_for_status(res, context=f"HeadObject {obj.key}")

            return res.headers

        headers = await self.retry_policy.call("HeadObject", head)

        apply_response_headers(obj, headers)

    async def delete_object(self, obj: S3Object):
        async def delete():
            res = await self._make_request(
                method="DELETE",
                action="DeleteObject",
                endpoint=self._object_endpoint(obj.key),
                params={"versionId": obj.version_id},
            )
            await self._raise_for_status(res, context=f"DeleteObject {obj.key}")

        await self.retry_policy.call("DeleteObject", delete)

    async def download_object(self, obj: S3Object, filepath: str):
        """
        Stream `obj.key` at `obj.version_id` into `filepath`.

        Metadata is stored on `obj`; `obj.content` is left untouched. If the
        download finally fails, a partly written file is removed.
        """
        context = f"GetObject {obj.key} -> {filepath}"
        opened = False

        async def download() -> Headers:
            nonlocal opened
            res = await self._make_request(
                method="GET",
                action="GetObject",
                endpoint=self._object_endpoint(obj.key),
                params={"versionId": obj.version_id},
                stream=True,
            )
            try:
                await self._raise_for_status(res, context=context)
                async with aiofiles.open(filepath, "wb") as f:
                    opened = True
                    writer = RateLimitedWriter(f, self.rate_limiter)
                    await self._drain(res, writer, context)
            finally:
                await res.aclose()

            return res.headers

        try:
            headers = await self.retry_policy.call("GetObject", download)
        except BaseException:
            if opened:
                logger.debug("Removing partial download", filepath=filepath)
                with contextlib.suppress(FileNotFoundError):
                    await aiofiles.os.remove(filepath)
            raise

        apply_response_headers(obj, headers)
