# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for pgsnap tests.

Provides a local S3 endpoint (moto server), stand-ins for pg_dump/psql,
and test configuration helpers.
"""

import sys
import tempfile
from pathlib import Path
from typing import Callable, Generator, List

import pytest
import pytest_asyncio
import structlog

from pgsnap.config import ConnectionProfile, PipelineConfig, RemoteProfile

TEST_BUCKET = "backups-bucket"
TEST_PREFIX = "daily"
TEST_REGION = "us-east-1"

SAMPLE_SQL = (
    b"CREATE TABLE orders (id integer PRIMARY KEY, item text);\n"
    b"INSERT INTO orders VALUES (1, 'widget');\n"
    b"INSERT INTO orders VALUES (2, 'gadget');\n"
)


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo configure_logging() calls made by CLI tests."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def s3_endpoint() -> Generator[str, None, None]:
    """
    Run a moto S3 server on a free local port.

    A fresh server per test keeps bucket state isolated.
    """
    from moto.server import ThreadedMotoServer

    server = ThreadedMotoServer(ip_address="127.0.0.1", port=0, verbose=False)
    server.start()
    host, port = server.get_host_and_port()
    # Moto backends are process-global; reset so each server starts empty.
    import requests

    requests.post(f"http://{host}:{port}/moto-api/reset", timeout=10)
    yield f"http://{host}:{port}"
    server.stop()


@pytest.fixture
def remote_profile(s3_endpoint: str) -> RemoteProfile:
    """Remote profile pointing at the local S3 endpoint."""
    return RemoteProfile(
        account_id="test-account",
        bucket=TEST_BUCKET,
        path_prefix=TEST_PREFIX,
        access_key_id="testing",
        secret_access_key="testing",
        region=TEST_REGION,
        endpoint_url=s3_endpoint,
    )


@pytest_asyncio.fixture
async def s3_client(remote_profile: RemoteProfile):
    """aiobotocore client with the test bucket created."""
    from pgsnap.storage.transfer import create_s3_client

    async with create_s3_client(remote_profile) as client:
        await client.create_bucket(Bucket=TEST_BUCKET)
        yield client


@pytest.fixture
def test_config(temp_dir: Path, remote_profile: RemoteProfile) -> PipelineConfig:
    """Create a test configuration."""
    return PipelineConfig(
        connection=ConnectionProfile(
            database="orders",
            password="test-password",
            passfile=None,
        ),
        remote=remote_profile,
        backup_dir=temp_dir / "backups",
        restore_dir=temp_dir / "restore-tmp",
        chunk_size=1024,
    )


@pytest.fixture
def offline_config(temp_dir: Path) -> PipelineConfig:
    """Configuration with complete credentials but no reachable endpoint."""
    return PipelineConfig(
        connection=ConnectionProfile(
            database="orders",
            password="test-password",
            passfile=None,
        ),
        remote=RemoteProfile(
            account_id="test-account",
            bucket=TEST_BUCKET,
            path_prefix=TEST_PREFIX,
            access_key_id="testing",
            secret_access_key="testing",
            region="auto",
            endpoint_url="http://127.0.0.1:9",
        ),
        backup_dir=temp_dir / "backups",
        restore_dir=temp_dir / "restore-tmp",
    )


# ============================================================================
# pg_dump / psql stand-ins
# ============================================================================

def python_command(script: str) -> List[str]:
    """Command running a Python one-off with the test interpreter."""
    return [sys.executable, "-c", script]


def fake_dump_command(sql: bytes, exit_status: int = 0) -> Callable[..., List[str]]:
    """Replacement for build_dump_command that prints fixed SQL."""
    script = (
        "import sys\n"
        f"sys.stdout.buffer.write({sql!r})\n"
        "sys.stdout.buffer.flush()\n"
        f"sys.stderr.write('pg_dump: fake exit {exit_status}\\n')\n"
        f"sys.exit({exit_status})\n"
    )
    return lambda profile: python_command(script)


def fake_apply_command(sink: Path, exit_status: int = 0) -> Callable[..., List[str]]:
    """Replacement for build_apply_command that records its stdin."""
    script = (
        "import shutil, sys\n"
        f"with open({str(sink)!r}, 'wb') as out:\n"
        "    shutil.copyfileobj(sys.stdin.buffer, out)\n"
        f"sys.stderr.write('psql: fake exit {exit_status}\\n')\n"
        f"sys.exit({exit_status})\n"
    )
    return lambda profile, single_transaction=True: python_command(script)


@pytest.fixture
def fake_pg_dump(monkeypatch):
    """Install a fake pg_dump; call it with the SQL to emit."""

    def _install(sql: bytes = SAMPLE_SQL, exit_status: int = 0) -> None:
        monkeypatch.setattr(
            "pgsnap.backup.manager.build_dump_command",
            fake_dump_command(sql, exit_status),
        )

    return _install


@pytest.fixture
def fake_psql(monkeypatch, temp_dir: Path):
    """Install a fake psql; returns the file its stdin is written to."""

    def _install(exit_status: int = 0) -> Path:
        sink = temp_dir / "psql-stdin.sql"
        monkeypatch.setattr(
            "pgsnap.backup.restore.build_apply_command",
            fake_apply_command(sink, exit_status),
        )
        return sink

    return _install


async def s3_object_exists(s3_client, bucket: str, key: str) -> bool:
    """Check if an S3 object exists."""
    try:
        await s3_client.head_object(Bucket=bucket, Key=key)
        return True
    except Exception:
        return False


async def get_s3_object_content(s3_client, bucket: str, key: str) -> bytes:
    """Get content of an S3 object."""
    response = await s3_client.get_object(Bucket=bucket, Key=key)
    async with response["Body"] as stream:
        return await stream.read()
