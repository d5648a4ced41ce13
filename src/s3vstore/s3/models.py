from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Literal

AmzAcl = (
    Literal["private"]
    | Literal["public-read"]
    | Literal["public-read-write"]
    | Literal["authenticated-read"]
    | Literal["aws-exec-read"]
    | Literal["bucket-owner-read"]
    | Literal["bucket-owner-full-control"]
)


@dataclass
class S3Object:
    key: str
    version_id: str | None = None
    etag: str | None = None
    mtime: datetime | None = None
    is_latest: bool | None = None
    content: bytes | None = None
    content_type: str | None = None
    content_disposition: str | None = None
    content_encoding: str | None = None
    content_language: str | None = None
    cache_control: str | None = None
    acl: AmzAcl | None = None
    metadata: Dict[str, str] | None = None


@dataclass
class ListCursor:
    """
    Resumable position in a version listing.

    Owned by the caller; pass the same cursor again to continue a listing
    that stopped early.
    """

    key_marker: str | None = None
    version_id_marker: str | None = None
    exhausted: bool = False

    def advance(self, page: "S3ListObjectVersionsRes"):
        if page.is_truncated:
            self.key_marker = page.next_key_marker
            self.version_id_marker = page.next_version_id_marker
            # Some stores omit the next markers on truncated pages.
            if self.key_marker is None:
                if not page.versions:
                    # Nothing to continue from; asking again returns this page.
                    self.exhausted = True
                    return
                self.key_marker = page.versions[-1].key
                self.version_id_marker = page.versions[-1].version_id
        else:
            self.exhausted = True


@dataclass
class S3ListObjectVersionsRes:
    versions: List[S3Object] = field(default_factory=list)
    is_truncated: bool = False
    next_key_marker: str | None = None
    next_version_id_marker: str | None = None
