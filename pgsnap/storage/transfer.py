# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgsnap Transfer - Move snapshot artifacts to and from object storage.

Transfers are whole-object and non-resumable: a failure mid-transfer
means the next invocation starts again from the first byte.

Uploads are verified with a HEAD request after they complete. The remote
size and ETag must match the local file (plain MD5 for single PUTs, the
MD5-of-part-MD5s form for multipart uploads), so a successful return
means the object is present and byte-identical.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, List

import aiofiles
import structlog

from pgsnap.config import RemoteProfile
from pgsnap.exceptions import DownloadError, UploadError
from pgsnap.naming import ARTIFACT_SUFFIX, object_key, parse_artifact_filename

logger = structlog.get_logger()

CONTENT_TYPE = "application/gzip"


@dataclass
class UploadReceipt:
    """Verified result of an upload."""

    bucket: str
    key: str
    size: int
    etag: str
    parts: int = 1


@dataclass
class RemoteArtifact:
    """An artifact found in object storage."""

    key: str
    size: int
    last_modified: datetime
    database_name: str | None = None
    timestamp: datetime | None = None


def create_s3_client(remote: RemoteProfile) -> Any:
    """
    Create an S3 client context manager for a remote profile.

    Credentials are passed explicitly so nothing is read from, or
    written to, shared AWS configuration files.

    Usage:
        async with create_s3_client(config.remote) as s3_client:
            ...
    """
    from aiobotocore.session import get_session

    session = get_session()
    return session.create_client(
        "s3",
        region_name=remote.region,
        endpoint_url=remote.resolved_endpoint,
        aws_access_key_id=remote.access_key_id,
        aws_secret_access_key=remote.secret_access_key,
    )


def _strip_etag(etag: str) -> str:
    return etag.strip('"').lower()


def multipart_etag(part_digests: List[bytes]) -> str:
    """ETag S3 assigns to a multipart object: md5 of part md5s plus count."""
    combined = hashlib.md5(b"".join(part_digests)).hexdigest()
    return f"{combined}-{len(part_digests)}"


async def upload_artifact(
    s3_client: Any,
    local_path: Path,
    bucket: str,
    key: str,
    multipart_threshold: int = 8 * 1024 * 1024,
    part_size: int = 8 * 1024 * 1024,
) -> UploadReceipt:
    """
    Upload one local artifact.

    Args:
        s3_client: aiobotocore S3 client
        local_path: Compressed artifact on disk
        bucket: Destination bucket
        key: Destination key
        multipart_threshold: Size from which multipart upload is used
        part_size: Size of each multipart part

    Returns:
        UploadReceipt describing the verified remote object

    Raises:
        UploadError: If the upload or its verification fails. The local
            file is never touched.
    """
    try:
        size = local_path.stat().st_size
    except OSError as e:
        raise UploadError(
            f"Cannot read local artifact: {e}",
            details={"local_path": str(local_path)},
        ) from e

    try:
        if size >= multipart_threshold:
            expected_etag, parts = await _upload_multipart(
                s3_client, local_path, bucket, key, part_size
            )
        else:
            async with aiofiles.open(local_path, "rb") as f:
                body = await f.read()
            await s3_client.put_object(
                Bucket=bucket,
                Key=key,
                Body=body,
                ContentType=CONTENT_TYPE,
            )
            expected_etag, parts = hashlib.md5(body).hexdigest(), 1
    except UploadError:
        raise
    except Exception as e:
        raise UploadError(
            f"Upload failed: {e}",
            details={"bucket": bucket, "key": key},
        ) from e

    receipt = await _verify_upload(s3_client, bucket, key, size, expected_etag)
    receipt.parts = parts

    logger.debug(
        "artifact_uploaded",
        bucket=bucket,
        key=key,
        size=size,
        parts=parts,
    )

    return receipt


async def _upload_multipart(
    s3_client: Any,
    local_path: Path,
    bucket: str,
    key: str,
    part_size: int,
) -> tuple[str, int]:
    """Upload in parts; abort the upload on any failure."""
    response = await s3_client.create_multipart_upload(
        Bucket=bucket, Key=key, ContentType=CONTENT_TYPE
    )
    upload_id = response["UploadId"]
    parts: List[dict] = []
    digests: List[bytes] = []

    try:
        async with aiofiles.open(local_path, "rb") as f:
            part_number = 1
            while True:
                data = await f.read(part_size)
                if not data:
                    break
                part = await s3_client.upload_part(
                    Bucket=bucket,
                    Key=key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data,
                )
                parts.append({"ETag": part["ETag"], "PartNumber": part_number})
                digests.append(hashlib.md5(data).digest())
                part_number += 1

        await s3_client.complete_multipart_upload(
            Bucket=bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": parts},
        )
    except Exception:
        try:
            await s3_client.abort_multipart_upload(
                Bucket=bucket, Key=key, UploadId=upload_id
            )
        except Exception as abort_error:
            logger.warning(
                "multipart_abort_failed",
                bucket=bucket,
                key=key,
                error=str(abort_error),
            )
        raise

    return multipart_etag(digests), len(parts)


async def _verify_upload(
    s3_client: Any,
    bucket: str,
    key: str,
    size: int,
    expected_etag: str,
) -> UploadReceipt:
    """HEAD the uploaded object and compare size and ETag."""
    try:
        head = await s3_client.head_object(Bucket=bucket, Key=key)
    except Exception as e:
        raise UploadError(
            f"Uploaded object not found: {e}",
            details={"bucket": bucket, "key": key},
        ) from e

    remote_size = head["ContentLength"]
    remote_etag = _strip_etag(head.get("ETag", ""))

    if remote_size != size:
        raise UploadError(
            "Uploaded object size does not match local file",
            details={"bucket": bucket, "key": key, "local": size, "remote": remote_size},
        )
    if remote_etag and remote_etag != expected_etag:
        raise UploadError(
            "Uploaded object checksum does not match local file",
            details={
                "bucket": bucket,
                "key": key,
                "expected": expected_etag,
                "remote": remote_etag,
            },
        )

    return UploadReceipt(bucket=bucket, key=key, size=size, etag=remote_etag)


async def download_artifact(
    s3_client: Any,
    bucket: str,
    key: str,
    dest: Path,
    chunk_size: int = 64 * 1024,
) -> int:
    """
    Stream one remote object to a local file.

    The object is written to ``<dest>.part`` and renamed into place once
    complete, so ``dest`` never holds a partial download.

    Returns:
        Number of bytes written

    Raises:
        DownloadError: If the object cannot be fetched completely
    """
    temp_path = dest.with_name(dest.name + ".part")
    written = 0

    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        response = await s3_client.get_object(Bucket=bucket, Key=key)
        expected = response.get("ContentLength")

        async with aiofiles.open(temp_path, "wb") as out:
            async with response["Body"] as stream:
                while True:
                    chunk = await stream.read(chunk_size)
                    if not chunk:
                        break
                    await out.write(chunk)
                    written += len(chunk)

        if expected is not None and written != expected:
            raise DownloadError(
                "Downloaded size does not match remote object",
                details={"bucket": bucket, "key": key, "expected": expected, "written": written},
            )

        temp_path.replace(dest)

    except DownloadError:
        temp_path.unlink(missing_ok=True)
        raise
    except Exception as e:
        temp_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Download failed: {e}",
            details={"bucket": bucket, "key": key},
        ) from e

    logger.debug("artifact_downloaded", bucket=bucket, key=key, size=written)

    return written


async def list_artifacts(
    s3_client: Any,
    bucket: str,
    path_prefix: str | None = None,
    batch_size: int = 1000,
) -> List[RemoteArtifact]:
    """
    List snapshot artifacts under a bucket prefix, newest first.

    Only keys ending in ``.sql.gz`` are returned. Keys that follow the
    naming contract also carry their parsed database name and timestamp.
    """
    prefix = object_key(path_prefix, "")
    artifacts: List[RemoteArtifact] = []
    paginator = s3_client.get_paginator("list_objects_v2")

    async for page in paginator.paginate(
        Bucket=bucket,
        Prefix=prefix,
        MaxKeys=batch_size,
    ):
        for obj in page.get("Contents", []):
            key = obj["Key"]
            if not key.endswith(ARTIFACT_SUFFIX):
                continue
            parsed = parse_artifact_filename(key.rsplit("/", 1)[-1])
            artifacts.append(
                RemoteArtifact(
                    key=key,
                    size=obj["Size"],
                    last_modified=obj["LastModified"],
                    database_name=parsed[0] if parsed else None,
                    timestamp=parsed[1] if parsed else None,
                )
            )

    artifacts.sort(key=lambda a: a.last_modified, reverse=True)
    return artifacts
