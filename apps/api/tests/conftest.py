import time
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional
from unittest.mock import patch

import pytest
import pytest_asyncio
from botocore.exceptions import ClientError
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from config import settings
from database import Base, get_db
from main import app
from models.processing_job import ProcessingJob
from models.project import Project, ProjectAccess
from models.project_asset import ProjectAsset
from models.user import User
from services.storage import StorageGateway
from services.token_verifier import TokenVerifier


TEST_JWT_SECRET = "test-hs256-secret-with-enough-entropy"
TEST_ISSUER = "https://idp.test/auth/v1"
TEST_AUDIENCE = "authenticated"
TEST_SERVICE_KEY = "service-key-for-tests-0123456789"
TEST_WORKER_SECRET = "worker-secret-for-tests-0123456789"
TEST_BUCKET = "geo-assets-test"


def make_token(subject: Optional[str], *, expires_in: int = 3600, **claims) -> str:
    now = int(time.time())
    payload = {
        "iss": TEST_ISSUER,
        "aud": TEST_AUDIENCE,
        "iat": now,
        "exp": now + expires_in,
        **claims,
    }
    if subject is not None:
        payload["sub"] = subject
    return jwt.encode(payload, TEST_JWT_SECRET, algorithm="HS256")


class FakeBody:
    def __init__(self, data: bytes):
        self.data = data
        self.closed = False

    def iter_chunks(self, chunk_size: int):
        for start in range(0, len(self.data), chunk_size):
            yield self.data[start:start + chunk_size]

    def close(self):
        self.closed = True


class FakeS3Client:
    """In-memory stand-in for the boto3 S3 client used by StorageGateway."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.failing_keys: set = set()
        self.list_calls: List[dict] = []
        self.delete_batches: List[List[str]] = []
        self.cors_rules: List[dict] = []
        self.lifecycle_rules: List[dict] = []
        self.unavailable = False

    def put(self, key: str, data: bytes = b"data", content_type: str = "application/octet-stream"):
        self.objects[key] = data
        self.content_types[key] = content_type

    def _check_available(self, operation: str):
        if self.unavailable:
            raise ClientError({"Error": {"Code": "ServiceUnavailable", "Message": "down"}}, operation)

    def generate_presigned_url(self, client_method, Params=None, ExpiresIn=3600):
        params = Params or {}
        return f"https://storage.test/{params['Bucket']}/{params['Key']}?method={client_method}&expires={ExpiresIn}"

    def get_object(self, Bucket, Key):
        self._check_available("GetObject")
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        data = self.objects[Key]
        return {
            "Body": FakeBody(data),
            "ContentType": self.content_types.get(Key),
            "ContentLength": len(data),
        }

    def delete_object(self, Bucket, Key):
        self._check_available("DeleteObject")
        self.objects.pop(Key, None)
        return {}

    def list_objects_v2(self, Bucket, Prefix, MaxKeys=1000, ContinuationToken=None):
        self._check_available("ListObjectsV2")
        self.list_calls.append({"Prefix": Prefix, "ContinuationToken": ContinuationToken})
        # Tokens carry the last listed key, so deletes between pages are safe.
        keys = sorted(
            key for key in self.objects
            if key.startswith(Prefix) and (ContinuationToken is None or key > ContinuationToken)
        )
        page = keys[:MaxKeys]
        truncated = len(keys) > MaxKeys
        response = {"Contents": [{"Key": key} for key in page], "IsTruncated": truncated}
        if truncated:
            response["NextContinuationToken"] = page[-1]
        return response

    def delete_objects(self, Bucket, Delete):
        keys = [item["Key"] for item in Delete["Objects"]]
        self.delete_batches.append(keys)
        deleted, errors = [], []
        for key in keys:
            if key in self.failing_keys:
                errors.append({"Key": key, "Code": "AccessDenied", "Message": "denied"})
                continue
            self.objects.pop(key, None)
            deleted.append({"Key": key})
        return {"Deleted": deleted, "Errors": errors}

    def put_bucket_cors(self, Bucket, CORSConfiguration):
        self.cors_rules.append(CORSConfiguration)
        return {}

    def put_bucket_lifecycle_configuration(self, Bucket, LifecycleConfiguration):
        self.lifecycle_rules.append(LifecycleConfiguration)
        return {}


class Seeder:
    """Inserts fixture rows through its own sessions."""

    def __init__(self, session_maker):
        self.session_maker = session_maker
        self._clock = 0

    def _next_timestamp(self) -> datetime:
        # Strictly increasing so FIFO order is deterministic.
        self._clock += 1
        return datetime(2026, 1, 1, tzinfo=timezone.utc).replace(second=self._clock % 60, minute=self._clock // 60)

    async def _add(self, row):
        async with self.session_maker() as session:
            session.add(row)
            await session.commit()
        return row

    async def user(self, user_id: str, role: str = "user") -> User:
        return await self._add(User(id=user_id, email=f"{user_id}@example.test", role=role))

    async def project(self, project_id: str, owner_id: str) -> Project:
        return await self._add(Project(id=project_id, owner_id=owner_id, name=f"Project {project_id}"))

    async def grant(self, project_id: str, user_id: str, expires_at: Optional[datetime] = None) -> ProjectAccess:
        return await self._add(
            ProjectAccess(id=str(uuid.uuid4()), project_id=project_id, user_id=user_id, expires_at=expires_at)
        )

    async def asset(
        self,
        asset_id: str,
        project_id: str,
        *,
        file_name: str = "model.obj",
        source_format: str = "obj",
        category: str = "single_model",
        status: str = "pending",
        asset_key: Optional[str] = None,
        final_key: Optional[str] = None,
        asset_type: Optional[str] = None,
        processed_at: Optional[datetime] = None,
        retention_days: Optional[int] = None,
        raw_size: Optional[int] = None,
    ) -> ProjectAsset:
        return await self._add(
            ProjectAsset(
                id=asset_id,
                project_id=project_id,
                asset_key=asset_key or f"raw/{project_id}/owner/1700000000000-{file_name}",
                final_key=final_key,
                name=file_name,
                mime_type="application/octet-stream",
                source_format=source_format,
                asset_type=asset_type,
                asset_category=category,
                processing_status=status,
                processed_at=processed_at,
                raw_file_retention_days=retention_days,
                raw_file_size_bytes=raw_size,
                created_at=self._next_timestamp(),
            )
        )

    async def job(
        self,
        job_id: str,
        asset_id: str,
        *,
        job_type: str = "normalize",
        status: str = "queued",
        worker_id: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> ProcessingJob:
        return await self._add(
            ProcessingJob(
                id=job_id,
                asset_id=asset_id,
                job_type=job_type,
                status=status,
                worker_id=worker_id,
                raw_file_key=f"raw/{asset_id}",
                progress_percent=0,
                created_at=self._next_timestamp(),
                started_at=started_at,
            )
        )

    async def get_asset(self, asset_id: str) -> Optional[ProjectAsset]:
        async with self.session_maker() as session:
            result = await session.execute(select(ProjectAsset).where(ProjectAsset.id == asset_id))
            return result.scalar_one_or_none()

    async def get_job(self, job_id: str) -> Optional[ProcessingJob]:
        async with self.session_maker() as session:
            result = await session.execute(select(ProcessingJob).where(ProcessingJob.id == job_id))
            return result.scalar_one_or_none()

    async def jobs_for(self, asset_id: str) -> List[ProcessingJob]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(ProcessingJob).where(ProcessingJob.asset_id == asset_id).order_by(ProcessingJob.created_at)
            )
            return list(result.scalars().all())


@pytest.fixture(autouse=True)
def disable_rate_limits():
    """Keep rate-limit state out of tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    yield
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest.fixture
def seed(session_maker):
    return Seeder(session_maker)


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def auth_header():
    def _header(subject: Optional[str], **kwargs) -> Dict[str, str]:
        return {"Authorization": f"Bearer {make_token(subject, **kwargs)}"}

    return _header


@pytest.fixture
def worker_headers():
    def _headers(worker_id: str, secret: str = TEST_WORKER_SECRET) -> Dict[str, str]:
        return {"X-Worker-Id": worker_id, "X-Worker-Secret": secret}

    return _headers


@pytest.fixture
def service_headers():
    return {"X-API-Key": TEST_SERVICE_KEY}


@pytest_asyncio.fixture
async def api_client(session_maker, fake_s3):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.token_verifier = TokenVerifier(
        hs256_secret=TEST_JWT_SECRET,
        issuer=TEST_ISSUER,
        audience=TEST_AUDIENCE,
        allow_claims_only_fallback=False,
    )
    app.state.storage_gateway = StorageGateway(fake_s3, TEST_BUCKET)
    with (
        patch.object(settings, "API_SECRET_KEY", TEST_SERVICE_KEY),
        patch.object(settings, "WORKER_SHARED_SECRET", TEST_WORKER_SECRET),
        patch.object(settings, "DISPATCH_API_URL", ""),
        patch("services.job_pipeline.async_session_maker", session_maker),
        patch("services.assets.async_session_maker", session_maker),
    ):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client

    app.dependency_overrides.pop(get_db, None)
    app.state.token_verifier = None
    app.state.storage_gateway = None
