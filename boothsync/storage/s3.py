"""Amazon S3 backend for the remote object store.

Thin boto3 wrapper that maps botocore failures onto the boothsync error
taxonomy. boto3's own retries are turned off: the orchestrator owns the
retry policy so that attempts are counted in one place.
"""

import contextlib
import logging
from typing import Any, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
)

from boothsync.types import AuthError, ConnectivityError, ObjectNotFoundError, RemoteStoreError

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})
AUTH_CODES = frozenset(
    {
        "AccessDenied",
        "InvalidAccessKeyId",
        "SignatureDoesNotMatch",
        "ExpiredToken",
        "InvalidToken",
        "TokenRefreshRequired",
        "AllAccessDisabled",
    }
)
TRANSIENT_CODES = frozenset(
    {
        "InternalError",
        "ServiceUnavailable",
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "RequestTimeout",
        "RequestTimeTooSkewed",
    }
)


def translate_client_error(error: ClientError, key: str) -> RemoteStoreError:
    """Map a botocore ClientError to the boothsync hierarchy."""
    code = str(error.response.get("Error", {}).get("Code", ""))
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
    message = error.response.get("Error", {}).get("Message") or str(error)

    if code in NOT_FOUND_CODES or status == 404:
        return ObjectNotFoundError(key)
    if code in AUTH_CODES or status in (401, 403):
        return AuthError(f"S3 rejected credentials ({code}): {message}")
    if code in TRANSIENT_CODES or status >= 500 or status == 429:
        return ConnectivityError(f"S3 transient failure ({code or status}): {message}")
    return RemoteStoreError(f"S3 error ({code or status}) on {key}: {message}")


class S3ObjectStore:
    """RemoteObjectStore on an S3 bucket.

    Args:
        bucket: Bucket name.
        region: AWS region (default us-east-1).
        prefix: Optional key prefix so several fleets can share a bucket.
        aws_access_key_id / aws_secret_access_key: Static credentials; when
            omitted boto3's default credential chain is used.
        client: Pre-built S3 client (tests pass a stubbed one).
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        prefix: str = "",
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        client: Any = None,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
    ):
        if not bucket:
            raise ValueError("S3 bucket name is required")
        self.bucket = bucket
        self.prefix = prefix.strip("/") + "/" if prefix.strip("/") else ""
        self._client = client or boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
            config=Config(
                retries={"max_attempts": 1, "mode": "standard"},
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
            ),
        )

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @contextlib.contextmanager
    def _translate_errors(self, key: str):
        try:
            yield
        except ClientError as e:
            raise translate_client_error(e, key) from e
        except (NoCredentialsError, PartialCredentialsError) as e:
            raise AuthError(f"No usable AWS credentials: {e}") from e
        except BotoCoreError as e:
            # EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ...
            raise ConnectivityError(f"S3 connection failure on {key}: {e}") from e

    def put(self, key: str, data: bytes) -> None:
        content_type = "application/json" if key.endswith(".json") else "application/octet-stream"
        with self._translate_errors(key):
            self._client.put_object(
                Bucket=self.bucket, Key=self._full_key(key), Body=data, ContentType=content_type
            )
        logger.debug(f"S3 put {key} ({len(data)} bytes)")

    def get(self, key: str) -> bytes:
        with self._translate_errors(key):
            response = self._client.get_object(Bucket=self.bucket, Key=self._full_key(key))
            return response["Body"].read()

    def list(self, prefix: str) -> List[str]:
        keys: List[str] = []
        with self._translate_errors(prefix):
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self._full_key(prefix)):
                for obj in page.get("Contents", []):
                    keys.append(obj["Key"][len(self.prefix):])
        return sorted(keys)

    def delete(self, key: str) -> None:
        try:
            with self._translate_errors(key):
                self._client.delete_object(Bucket=self.bucket, Key=self._full_key(key))
        except ObjectNotFoundError:
            pass

    def probe(self) -> None:
        with self._translate_errors(self.bucket):
            self._client.head_bucket(Bucket=self.bucket)
