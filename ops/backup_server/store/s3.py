"""
S3-compatible artifact store.

Artifacts are stored as single objects:
    s3://<bucket>/<prefix>/full/backup_<ts>.json.gz
    s3://<bucket>/<prefix>/incremental/audit_<ts>_<n>changes.jsonl.gz

Kind, origin and checksums travel as S3 user metadata, so a listing
reads them back with one HEAD per object instead of parsing names.

Invariants:
    - put_object is a single request, so an object is either fully
      visible or absent; no multipart uploads are left behind
    - Artifact ids are object keys and must live under the configured prefix
    - botocore errors never escape: they become NotFoundError or
      StorageUnavailableError

How to change safely:
    - Test against MinIO (see tests/e2e) before changing key layout
    - Keep reading metadata keys written by older versions
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..config import S3Config
from ..errors import NotFoundError, StorageUnavailableError
from .base import ArtifactKind, ArtifactOrigin, BackupArtifact

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
DOWNLOAD_CHUNK_BYTES = 1024 * 1024


class S3ArtifactStore:
    """Artifact store on S3 (or MinIO) via aiobotocore.

    Attributes:
        config: S3 configuration

    Example:
        >>> store = S3ArtifactStore(S3Config.from_env())
        >>> await store.connect()
        >>> artifacts = await store.list_artifacts(ArtifactKind.FULL)
    """

    def __init__(self, config: S3Config) -> None:
        self.config = config
        self._session = None
        self._s3_ctx = None
        self._s3_client = None

    @property
    def is_connected(self) -> bool:
        return self._s3_client is not None

    async def connect(self) -> None:
        """Initialize S3 client."""
        if self._s3_client is not None:
            return

        self._session = get_session()

        client_kwargs: dict[str, Any] = {
            "region_name": self.config.region,
        }

        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url

        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        try:
            self._s3_ctx = self._session.create_client("s3", **client_kwargs)
            self._s3_client = await self._s3_ctx.__aenter__()
        except (BotoCoreError, ClientError) as e:
            self._s3_ctx = None
            raise StorageUnavailableError(f"Failed to create S3 client: {e}") from e

        logger.info(
            "Connected to S3 artifact store",
            extra={"bucket": self.config.bucket, "prefix": self.config.prefix},
        )

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None
            self._s3_ctx = None

    # --- Helpers ---

    def _client(self):
        if self._s3_client is None:
            raise StorageUnavailableError("Artifact store is not connected")
        return self._s3_client

    def _key(self, kind: ArtifactKind, name: str) -> str:
        return f"{self.config.prefix}/{kind.value}/{name}"

    def _link(self, key: str) -> str:
        if self.config.public_url:
            return f"{self.config.public_url.rstrip('/')}/{key}"
        return f"s3://{self.config.bucket}/{key}"

    def _check_id(self, artifact_id: str) -> None:
        if not artifact_id.startswith(f"{self.config.prefix}/") or ".." in artifact_id:
            raise NotFoundError(f"Artifact not found: {artifact_id}", artifact_id=artifact_id)

    def _translate(self, error: Exception, artifact_id: str | None, operation: str) -> Exception:
        if isinstance(error, ClientError):
            code = str(error.response.get("Error", {}).get("Code", ""))
            if code in NOT_FOUND_CODES:
                return NotFoundError(f"Artifact not found: {artifact_id}", artifact_id=artifact_id)
        logger.warning(
            f"S3 {operation} failed: {error}",
            extra={"artifact_id": artifact_id, "bucket": self.config.bucket},
        )
        return StorageUnavailableError(
            f"Artifact store {operation} failed: {error}",
            details={"artifact_id": artifact_id, "operation": operation},
        )

    def _artifact_from_head(self, key: str, head: dict[str, Any]) -> BackupArtifact:
        return BackupArtifact.from_metadata(
            artifact_id=key,
            name=key.rsplit("/", 1)[-1],
            created_at=head.get("LastModified") or datetime.now(timezone.utc),
            size_bytes=int(head.get("ContentLength", 0)),
            web_link=self._link(key),
            metadata=head.get("Metadata", {}),
        )

    # --- ArtifactStore ---

    async def list_artifacts(self, kind: ArtifactKind | None = None) -> list[BackupArtifact]:
        client = self._client()
        kinds = [kind] if kind is not None else list(ArtifactKind)
        artifacts = []

        try:
            paginator = client.get_paginator("list_objects_v2")
            for listed_kind in kinds:
                prefix = f"{self.config.prefix}/{listed_kind.value}/"
                async for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix):
                    for obj in page.get("Contents", []):
                        head = await client.head_object(Bucket=self.config.bucket, Key=obj["Key"])
                        try:
                            artifacts.append(self._artifact_from_head(obj["Key"], head))
                        except ValueError as e:
                            logger.warning(
                                f"Skipping unclassified object: {e}",
                                extra={"key": obj["Key"]},
                            )
        except (BotoCoreError, ClientError) as e:
            raise self._translate(e, None, "list") from e

        return sorted(artifacts, key=lambda a: a.created_at, reverse=True)

    async def get_artifact(self, artifact_id: str) -> BackupArtifact | None:
        try:
            self._check_id(artifact_id)
        except NotFoundError:
            return None

        client = self._client()
        try:
            head = await client.head_object(Bucket=self.config.bucket, Key=artifact_id)
        except (BotoCoreError, ClientError) as e:
            error = self._translate(e, artifact_id, "head")
            if isinstance(error, NotFoundError):
                return None
            raise error from e

        try:
            return self._artifact_from_head(artifact_id, head)
        except ValueError as e:
            logger.warning(f"Object is not a backup artifact: {e}", extra={"key": artifact_id})
            return None

    async def upload(
        self,
        source_path: str,
        name: str,
        kind: ArtifactKind,
        origin: ArtifactOrigin,
        checksum: str,
        content_checksum: str | None = None,
    ) -> BackupArtifact:
        client = self._client()
        key = self._key(kind, name)
        metadata = BackupArtifact.build_metadata(kind, origin, checksum, content_checksum)

        with open(source_path, "rb") as f:
            body = f.read()

        try:
            await client.put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=body,
                ContentType="application/gzip",
                Metadata=metadata,
            )
        except (BotoCoreError, ClientError) as e:
            raise self._translate(e, key, "upload") from e

        logger.info(
            "Uploaded artifact",
            extra={"key": key, "kind": kind.value, "size_bytes": len(body)},
        )

        return BackupArtifact(
            id=key,
            name=name,
            kind=kind,
            origin=origin,
            created_at=datetime.now(timezone.utc),
            size_bytes=len(body),
            web_link=self._link(key),
            checksum=checksum,
            content_checksum=content_checksum,
        )

    async def download(self, artifact_id: str, dest_path: str) -> int:
        self._check_id(artifact_id)
        client = self._client()
        written = 0

        try:
            response = await client.get_object(Bucket=self.config.bucket, Key=artifact_id)
            async with response["Body"] as stream:
                with open(dest_path, "wb") as f:
                    while True:
                        chunk = await stream.read(DOWNLOAD_CHUNK_BYTES)
                        if not chunk:
                            break
                        f.write(chunk)
                        written += len(chunk)
        except (BotoCoreError, ClientError) as e:
            raise self._translate(e, artifact_id, "download") from e

        return written

    async def read_range(self, artifact_id: str, start: int, length: int) -> bytes:
        self._check_id(artifact_id)
        client = self._client()

        try:
            response = await client.get_object(
                Bucket=self.config.bucket,
                Key=artifact_id,
                Range=f"bytes={start}-{start + length - 1}",
            )
            async with response["Body"] as stream:
                return await stream.read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "InvalidRange":
                return b""
            raise self._translate(e, artifact_id, "read") from e
        except BotoCoreError as e:
            raise self._translate(e, artifact_id, "read") from e

    async def delete(self, artifact_id: str) -> None:
        if await self.get_artifact(artifact_id) is None:
            raise NotFoundError(f"Artifact not found: {artifact_id}", artifact_id=artifact_id)

        try:
            await self._client().delete_object(Bucket=self.config.bucket, Key=artifact_id)
        except (BotoCoreError, ClientError) as e:
            raise self._translate(e, artifact_id, "delete") from e

        logger.info("Deleted artifact", extra={"key": artifact_id})
