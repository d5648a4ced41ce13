from .exceptions import (
    CredentialsError,
    HttpError,
    IncompleteBodyError,
    OperationCancelledError,
    RateLimitConfigError,
    S3ResponseError,
)
from .s3.client import S3VersionedClient
from .s3.models import ListCursor, S3Object

__all__ = [
    "CredentialsError",
    "HttpError",
    "IncompleteBodyError",
    "ListCursor",
    "OperationCancelledError",
    "RateLimitConfigError",
    "S3Object",
    "S3ResponseError",
    "S3VersionedClient",
]
