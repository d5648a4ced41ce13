import configparser
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Protocol

from httpx import AsyncClient, HTTPError
from structlog import get_logger

from .exceptions import CredentialsError

logger = get_logger()

IMDS_HOST = "http://169.254.169.254"
IMDS_TOKEN_TTL = "21600"


@dataclass
class Credentials:
    access_key: str
    secret_key: str
    session_token: str | None = None


class CredentialsProvider(Protocol):
    name: str

    async def retrieve(self) -> Credentials:
        ...


class StaticProvider:
    name = "static"

    def __init__(self, *, access_key: str, secret_key: str, session_token=None):
        self.credentials = Credentials(
            access_key=access_key, secret_key=secret_key, session_token=session_token
        )

    async def retrieve(self) -> Credentials:
        if not self.credentials.access_key or not self.credentials.secret_key:
            raise LookupError("static access key or secret key is empty")
        return self.credentials


class EnvProvider:
    name = "environment"

    async def retrieve(self) -> Credentials:
        access_key = os.environ.get("AWS_ACCESS_KEY_ID") or os.environ.get(
            "AWS_ACCESS_KEY"
        )
        secret_key = os.environ.get("AWS_SECRET_ACCESS_KEY") or os.environ.get(
            "AWS_SECRET_KEY"
        )
        if not access_key:
            raise LookupError("AWS_ACCESS_KEY_ID not found in environment")
        if not secret_key:
            raise LookupError("AWS_SECRET_ACCESS_KEY not found in environment")

        return Credentials(
            access_key=access_key,
            secret_key=secret_key,
            session_token=os.environ.get("AWS_SESSION_TOKEN"),
        )


class SharedCredentialsProvider:
    name = "shared-credentials-file"

    def __init__(self, *, filename: str | None = None, profile: str | None = None):
        self.filename = filename
        self.profile = profile

    def _resolve_filename(self) -> Path:
        filename = self.filename or os.environ.get("AWS_SHARED_CREDENTIALS_FILE")
        if filename:
            return Path(filename)
        return Path.home() / ".aws" / "credentials"

    async def retrieve(self) -> Credentials:
        filename = self._resolve_filename()
        profile = self.profile or os.environ.get("AWS_PROFILE") or "default"

        # Secrets may contain "%", so no interpolation.
        config = configparser.RawConfigParser()
        try:
            read = config.read(filename)
        except configparser.Error as e:
            raise LookupError(f"malformed credentials file {filename}: {e}") from e
        if not read:
            raise LookupError(f"failed to read shared credentials file {filename}")
        if not config.has_section(profile):
            raise LookupError(f"profile {profile} not found in {filename}")

        section = config[profile]
        access_key = section.get("aws_access_key_id")
        secret_key = section.get("aws_secret_access_key")
        if not access_key or not secret_key:
            raise LookupError(f"profile {profile} in {filename} has no key pair")

        return Credentials(
            access_key=access_key,
            secret_key=secret_key,
            session_token=section.get("aws_session_token"),
        )


class InstanceRoleProvider:
    """
    Fetch role credentials from the EC2 instance metadata service (IMDSv2).
    """

    name = "ec2-role"

    def __init__(self, *, host: str = IMDS_HOST, timeout: float = 1.0, transport=None):
        self.host = host
        self.timeout = timeout
        self.transport = transport

    async def retrieve(self) -> Credentials:
        async with AsyncClient(
            base_url=self.host, timeout=self.timeout, transport=self.transport
        ) as client:
            try:
                token_res = await client.put(
                    "/latest/api/token",
                    headers={"x-aws-ec2-metadata-token-ttl-seconds": IMDS_TOKEN_TTL},
                )
                token_res.raise_for_status()
                headers = {"x-aws-ec2-metadata-token": token_res.text}

                roles_res = await client.get(
                    "/latest/meta-data/iam/security-credentials/", headers=headers
                )
                roles_res.raise_for_status()
                role = roles_res.text.splitlines()[0].strip()

                creds_res = await client.get(
                    f"/latest/meta-data/iam/security-credentials/{role}",
                    headers=headers,
                )
                creds_res.raise_for_status()
            except (HTTPError, IndexError) as e:
                raise LookupError(f"instance metadata unavailable: {e!r}") from e

        try:
            data = creds_res.json()
            return Credentials(
                access_key=data["AccessKeyId"],
                secret_key=data["SecretAccessKey"],
                session_token=data.get("Token"),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise LookupError(f"unexpected instance credentials: {e!r}") from e


def default_providers(
    *, access_key: str = "", secret_key: str = ""
) -> List[CredentialsProvider]:
    if access_key and secret_key:
        return [StaticProvider(access_key=access_key, secret_key=secret_key)]

    return [EnvProvider(), SharedCredentialsProvider(), InstanceRoleProvider()]


async def resolve_credentials(providers: List[CredentialsProvider]) -> Credentials:
    errors = []
    for provider in providers:
        try:
            credentials = await provider.retrieve()
        except LookupError as e:
            errors.append(f"{provider.name}: {e}")
            continue

        logger.debug("Credentials resolved", provider=provider.name)
        return credentials

    raise CredentialsError(errors)
