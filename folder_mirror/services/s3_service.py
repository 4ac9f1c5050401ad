"""S3 service for the object store operations the sync engine needs."""

import base64
import logging
import os
import posixpath
from pathlib import Path
from typing import IO

import boto3
from botocore.exceptions import (
    ClientError,
    InvalidRegionError,
    NoCredentialsError,
    PartialCredentialsError,
    ProfileNotFound,
)
from mypy_boto3_s3 import S3Client

logger = logging.getLogger(__name__)

# Error codes that mean the credentials or the addressing are wrong; retrying
# the cycle later will not fix them.
FATAL_ERROR_CODES = frozenset(
    {
        "InvalidAccessKeyId",
        "SignatureDoesNotMatch",
        "InvalidToken",
        "ExpiredToken",
        "AuthorizationHeaderMalformed",
        "InvalidBucketName",
    }
)


class FatalSetupError(RuntimeError):
    """Authentication or addressing failure while setting up the object store."""


class IntegrityError(IOError):
    """The digest reported by the store does not match the local digest."""


def create_s3_client(
    profile: str | None,
    region: str = "us-west-2",
    endpoint_url: str | None = None,
) -> S3Client:
    """Create an S3 client.

    Args:
        profile: AWS profile name; blank uses the default credential chain
        region: AWS region (default: us-west-2)
        endpoint_url: Optional endpoint of an S3-compatible store

    Returns:
        Configured S3 client

    Raises:
        ProfileNotFound: If the profile does not exist
        ValueError: If the endpoint URL is invalid
    """
    session = boto3.Session(profile_name=profile or None, region_name=region)
    if endpoint_url:
        client: S3Client = session.client("s3", endpoint_url=endpoint_url)
    else:
        client = session.client("s3")
    return client


def ensure_bucket(client: S3Client, bucket: str, region: str | None = None) -> bool:
    """Make sure the bucket exists, creating it if needed.

    Args:
        client: S3 client
        bucket: S3 bucket name
        region: Region for a new bucket's location constraint

    Returns:
        True if the bucket was created, False if it already existed
    """
    try:
        client.head_bucket(Bucket=bucket)
        return False
    except ClientError as e:
        if e.response["Error"]["Code"] not in ("404", "NoSuchBucket"):
            raise

    logger.info("Bucket %s does not exist, creating it", bucket)
    if region and region != "us-east-1":
        client.create_bucket(
            Bucket=bucket,
            CreateBucketConfiguration={"LocationConstraint": region},  # type: ignore[typeddict-item]
        )
    else:
        client.create_bucket(Bucket=bucket)
    return True


def upload_object(
    client: S3Client,
    bucket: str,
    key: str,
    body: IO[bytes],
    length: int,
    content_md5: str | None = None,
) -> str:
    """Write an object and return the content digest computed by the store.

    Args:
        client: S3 client
        bucket: S3 bucket name
        key: S3 object key
        body: Readable binary stream positioned at the start of the content
        length: Content length in bytes
        content_md5: Optional hex MD5 sent as Content-MD5 so S3 rejects corrupt writes

    Returns:
        The store's hex digest of the object (the ETag without quotes)
    """
    extra: dict[str, str] = {}
    if content_md5:
        extra["ContentMD5"] = base64.b64encode(bytes.fromhex(content_md5)).decode("ascii")
    response = client.put_object(
        Bucket=bucket,
        Key=key,
        Body=body,
        ContentLength=length,
        **extra,  # type: ignore[arg-type]
    )
    return response.get("ETag", "").strip('"').lower()


def delete_object_if_exists(client: S3Client, bucket: str, key: str) -> bool:
    """Delete an object if present.

    Returns:
        True if the object existed and was deleted, False if it was not there
    """
    try:
        client.head_object(Bucket=bucket, Key=key)
    except ClientError as e:
        if e.response["Error"]["Code"] in ("404", "NoSuchKey"):
            return False
        raise
    client.delete_object(Bucket=bucket, Key=key)
    return True


def build_object_key(source_root: str | Path, file_path: str | Path, target_folder: str = "") -> str:
    """Derive the object key for a local file.

    The key is the path relative to source_root with forward slashes,
    joined under target_folder when one is configured.

    Examples:
        build_object_key("/data", "/data/a/b.txt") -> "a/b.txt"
        build_object_key("/data", "/data/a/b.txt", "backup/") -> "backup/a/b.txt"
    """
    relative = os.path.relpath(os.path.abspath(file_path), os.path.abspath(source_root))
    key = Path(relative).as_posix()
    if target_folder and target_folder.strip():
        key = posixpath.normpath(f"{target_folder.strip().replace(os.sep, '/')}/{key}")
    return key.lstrip("/")


def object_uri(bucket: str, key: str) -> str:
    return f"s3://{bucket}/{key}"


def classify_setup_error(exc: BaseException) -> FatalSetupError | None:
    """Map an exception raised while setting up the client to a fatal error.

    Returns:
        A FatalSetupError wrapping exc when it is an authentication or
        addressing problem, otherwise None (the caller treats it as transient)
    """
    if isinstance(exc, FatalSetupError):
        return exc
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError, ProfileNotFound)):
        return FatalSetupError(f"Object store credentials are not usable: {exc}")
    if isinstance(exc, InvalidRegionError):
        return FatalSetupError(f"Object store region is invalid: {exc}")
    if isinstance(exc, ValueError) and "endpoint" in str(exc).lower():
        return FatalSetupError(f"Object store endpoint is invalid: {exc}")
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        if code in FATAL_ERROR_CODES:
            return FatalSetupError(f"Object store rejected the connection ({code}): {exc}")
    return None
