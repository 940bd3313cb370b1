"""
E2E test fixtures for the backup server.

These tests require an S3-compatible endpoint (MinIO) to be running:

    docker run -p 9000:9000 minio/minio server /data
    BACKUP_E2E_TESTS=1 S3_ENDPOINT=http://localhost:9000 \
        AWS_ACCESS_KEY_ID=minioadmin AWS_SECRET_ACCESS_KEY=minioadmin pytest tests/e2e
"""

import os
import socket
import time
import uuid
from urllib.parse import urlparse

import pytest
from aiobotocore.session import get_session
from botocore.exceptions import ClientError

from ops.backup_server.config import S3Config
from ops.backup_server.store.s3 import S3ArtifactStore

# Skip E2E tests if not in E2E mode
E2E_ENABLED = os.environ.get("BACKUP_E2E_TESTS", "0") == "1"

pytestmark = pytest.mark.skipif(
    not E2E_ENABLED,
    reason="E2E tests disabled. Set BACKUP_E2E_TESTS=1 to enable."
)


def wait_for_service(host: str, port: int, timeout: int = 60) -> bool:
    """Wait for a service to become available."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1):
                return True
        except OSError:
            time.sleep(1)
    return False


@pytest.fixture(scope="session")
def s3_endpoint() -> str:
    endpoint = os.environ.get("S3_ENDPOINT", "http://localhost:9000")
    parsed = urlparse(endpoint)
    assert wait_for_service(parsed.hostname, parsed.port or 80, timeout=30), "S3 not ready"
    return endpoint


@pytest.fixture
def s3_config(s3_endpoint) -> S3Config:
    """S3 configuration with a unique prefix per test for isolation."""
    return S3Config(
        bucket=os.environ.get("S3_BUCKET", "backup-e2e"),
        region=os.environ.get("S3_REGION", "us-east-1"),
        endpoint_url=s3_endpoint,
        prefix=f"e2e-{uuid.uuid4().hex[:8]}",
        access_key_id=os.environ.get("AWS_ACCESS_KEY_ID", "minioadmin"),
        secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY", "minioadmin"),
    )


async def ensure_bucket(config: S3Config) -> None:
    session = get_session()
    async with session.create_client(
        "s3",
        region_name=config.region,
        endpoint_url=config.endpoint_url,
        aws_access_key_id=config.access_key_id,
        aws_secret_access_key=config.secret_access_key,
    ) as client:
        try:
            await client.create_bucket(Bucket=config.bucket)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code not in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                raise


@pytest.fixture
async def s3_store(s3_config):
    await ensure_bucket(s3_config)
    store = S3ArtifactStore(s3_config)
    await store.connect()
    yield store
    # BackupService.shutdown may have closed it
    await store.connect()
    for artifact in await store.list_artifacts():
        await store.delete(artifact.id)
    await store.close()
