import asyncio
import urllib.parse as urllib
from datetime import datetime, timezone
from typing import AsyncIterable, Dict, List

from httpx import AsyncClient, Response
from structlog import get_logger

from .auth import get_canonical_headers, get_hash, get_signature, get_signature_key
from .credentials import (
    Credentials,
    CredentialsProvider,
    default_providers,
    resolve_credentials,
)
from .enums import Service
from .exceptions import OperationCancelledError

logger = get_logger()


def quote_query_value(value: str) -> str:
    return urllib.quote(value, safe="-_.~")


class AwsClient:
    def __init__(
        self,
        *,
        access_key: str,
        secret_key: str,
        region: str,
        service: Service,
        endpoint: str,
        credential_providers: List[CredentialsProvider] | None = None,
    ):
        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region
        self.service = service

        parsed_endpoint = urllib.urlparse(endpoint)
        self.scheme = parsed_endpoint.scheme or "https"
        self.host = parsed_endpoint.netloc or parsed_endpoint.path

        self.credential_providers = credential_providers or default_providers(
            access_key=access_key, secret_key=secret_key
        )
        self.credentials: Credentials | None = None
        self.cancel_event: asyncio.Event | None = None

        self._httpx = None

    async def connect(self, transport=None):
        assert self._httpx is None, "AwsClient already connected"
        self.credentials = await resolve_credentials(self.credential_providers)
        self._httpx = AsyncClient(timeout=None, transport=transport)

    async def disconnect(self):
        assert self._httpx is not None, "AwsClient is not connected"
        await self._httpx.aclose()
        self._httpx = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *exc_info):
        await self.disconnect()

    def set_cancel_event(self, event: asyncio.Event | None):
        """
        Attach an event that aborts in-flight requests and retry waits once set.
        """
        self.cancel_event = event

    async def _run_cancellable(self, operation: str, coro):
        if self.cancel_event is None:
            return await coro
        if self.cancel_event.is_set():
            coro.close()
            raise OperationCancelledError(operation)

        task = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(self.cancel_event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise OperationCancelledError(operation)

    async def _make_request(
        self,
        *,
        method: str,
        action: str,
        endpoint: str = "/",
        params: Dict | None = None,
        extra_headers: Dict | None = None,
        data: bytes | None = None,
        body: AsyncIterable[bytes] | None = None,
        stream: bool = False,
    ) -> Response:
        """
        Sign and send one SigV4 request.

        `data` is the full payload and is hashed for the signature. When `body`
        is given it is sent in place of `data` (e.g. a rate-limited view of the
        same bytes) and `data` is only used for hashing and Content-Length.
        """
        assert isinstance(self._httpx, AsyncClient)
        assert self.credentials is not None, "AwsClient is not connected"

        utcnow = datetime.now(timezone.utc)
        amz_date = utcnow.strftime("%Y%m%dT%H%M%SZ")
        datestamp = utcnow.strftime("%Y%m%d")

        canonical_querystring_parts = []
        if params:
            for k, v in params.items():
                if v is None:
                    continue
                item_querystring = f"{quote_query_value(k)}={quote_query_value(str(v))}"
                canonical_querystring_parts.append(item_querystring)
        canonical_querystring = "&".join(sorted(canonical_querystring_parts))

        canonical_uri = urllib.quote(endpoint, safe="/-_.~")
        payload_hash = get_hash(b"" if data is None else data)

        signed_header_values = {
            "host": self.host,
            "x-amz-date": amz_date,
            "x-amz-content-sha256": payload_hash,
        }
        if self.credentials.session_token:
            signed_header_values["x-amz-security-token"] = self.credentials.session_token
        if extra_headers:
            for k, v in extra_headers.items():
                if v is not None and k.lower().startswith("x-amz-"):
                    signed_header_values[k.lower()] = v
        canonical_headers, signed_headers = get_canonical_headers(signed_header_values)

        canonical_request_parts = [
            method,
            canonical_uri,
            canonical_querystring,
            canonical_headers,
            signed_headers,
            payload_hash,
        ]
        canonical_request = "\n".join(canonical_request_parts)
        hashed_canonical_request = get_hash(canonical_request)

        algorithm = "AWS4-HMAC-SHA256"
        credential_scope = (
            f"{datestamp}/{self.region}/{self.service.value}/aws4_request"
        )

        string_to_sign = (
            f"{algorithm}\n{amz_date}\n{credential_scope}\n{hashed_canonical_request}"
        )
        signature_key = get_signature_key(
            key=self.credentials.secret_key,
            datestamp=datestamp,
            region=self.region,
            service=self.service,
        )
        signature = get_signature(
            signature_key=signature_key, string_to_sign=string_to_sign
        )

        authorization_header_parts = [
            algorithm,
            f"Credential={self.credentials.access_key}/{credential_scope},",
            f"SignedHeaders={signed_headers},",
            f"Signature={signature}",
        ]
        authorization_header = " ".join(authorization_header_parts)

        headers = {
            k: v for k, v in signed_header_values.items() if k != "host"
        }
        headers["Authorization"] = authorization_header
        if extra_headers:
            headers.update({k: v for k, v in extra_headers.items() if v is not None})
        if data is not None:
            headers["Content-Length"] = str(len(data))

        url = f"{self.scheme}://{self.host}{canonical_uri}"
        if canonical_querystring:
            url = f"{url}?{canonical_querystring}"

        request = self._httpx.build_request(
            method=method,
            url=url,
            headers=headers,
            content=body if body is not None else data,
        )
        res = await self._run_cancellable(
            action, self._httpx.send(request, stream=stream)
        )
        logger.debug(
            "HttpRequest sent", action=action, method=method, status_code=res.status_code
        )

        return res
