import hashlib
import io
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote

import pytest
import pytest_asyncio
from botocore.exceptions import ClientError, NoCredentialsError
from botocore.response import StreamingBody
from httpx import ASGITransport, AsyncClient

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from gateway.core.config import Settings, get_settings
from gateway.main import create_app
from gateway.services.storage import StorageService

BUCKET = "test-bucket"


def client_error(code: str, operation: str, message: str = "error") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class FakePaginator:
    page_size = 2

    def __init__(self, client: "FakeS3Client") -> None:
        self.client = client

    def paginate(self, Bucket, Prefix="", PaginationConfig=None):
        self.client._check("ListObjectsV2")
        objects = self.client._bucket(Bucket, "ListObjectsV2")
        keys = sorted(key for key in objects if key.startswith(Prefix))
        max_items = (PaginationConfig or {}).get("MaxItems")
        if max_items:
            keys = keys[:max_items]
        if not keys:
            yield {"KeyCount": 0}
            return
        for start in range(0, len(keys), self.page_size):
            yield {
                "Contents": [
                    {
                        "Key": key,
                        "Size": len(objects[key]["Body"]),
                        "LastModified": objects[key]["LastModified"],
                        "ETag": objects[key]["ETag"],
                    }
                    for key in keys[start : start + self.page_size]
                ]
            }


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client."""

    def __init__(self, buckets=()) -> None:
        self.buckets: dict[str, dict[str, dict]] = {name: {} for name in buckets}
        self.locations: dict[str, str | None] = {}
        self.failure: Exception | None = None
        self.fail_on: dict[str, Exception] = {}
        self.sign_failures: set[str] = set()
        self.delay = 0.0

    def _check(self, operation: str) -> None:
        if self.delay:
            time.sleep(self.delay)
        if self.failure is not None:
            raise self.failure
        if operation in self.fail_on:
            raise self.fail_on[operation]

    def _bucket(self, name: str, operation: str) -> dict[str, dict]:
        try:
            return self.buckets[name]
        except KeyError:
            raise client_error("NoSuchBucket", operation) from None

    def head_bucket(self, Bucket):
        self._check("HeadBucket")
        if Bucket not in self.buckets:
            raise client_error("404", "HeadBucket", "Not Found")
        return {}

    def create_bucket(self, Bucket, CreateBucketConfiguration=None):
        self._check("CreateBucket")
        if Bucket in self.buckets:
            raise client_error("BucketAlreadyOwnedByYou", "CreateBucket")
        self.buckets[Bucket] = {}
        self.locations[Bucket] = (CreateBucketConfiguration or {}).get("LocationConstraint")
        return {}

    def put_object(self, Bucket, Key, Body, ContentLength, ContentType):
        self._check("PutObject")
        objects = self._bucket(Bucket, "PutObject")
        data = Body if isinstance(Body, bytes) else Body.read()
        if len(data) != ContentLength:
            raise client_error("IncompleteBody", "PutObject")
        etag = f'"{hashlib.md5(data).hexdigest()}"'
        objects[Key] = {
            "Body": data,
            "ContentType": ContentType,
            "LastModified": datetime.now(timezone.utc),
            "ETag": etag,
        }
        return {"ETag": etag}

    def _object(self, Bucket, Key, operation, missing_code):
        objects = self._bucket(Bucket, operation)
        if Key not in objects:
            raise client_error(missing_code, operation, "Not Found")
        return objects[Key]

    def get_object(self, Bucket, Key):
        self._check("GetObject")
        obj = self._object(Bucket, Key, "GetObject", "NoSuchKey")
        return {
            "Body": StreamingBody(io.BytesIO(obj["Body"]), len(obj["Body"])),
            "ContentLength": len(obj["Body"]),
            "ContentType": obj["ContentType"],
            "LastModified": obj["LastModified"],
            "ETag": obj["ETag"],
        }

    def head_object(self, Bucket, Key):
        self._check("HeadObject")
        obj = self._object(Bucket, Key, "HeadObject", "404")
        return {
            "ContentLength": len(obj["Body"]),
            "ContentType": obj["ContentType"],
            "LastModified": obj["LastModified"],
            "ETag": obj["ETag"],
        }

    def delete_object(self, Bucket, Key):
        self._check("DeleteObject")
        self._bucket(Bucket, "DeleteObject").pop(Key, None)
        return {}

    def get_paginator(self, operation_name):
        assert operation_name == "list_objects_v2"
        return FakePaginator(self)

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        # Signing is local to the client; backend outages do not affect it.
        if Params["Key"] in self.sign_failures:
            raise NoCredentialsError()
        return (
            f"http://fake-s3.local/{Params['Bucket']}/{quote(Params['Key'])}"
            f"?X-Amz-Expires={ExpiresIn}&X-Amz-Signature=fake"
        )


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        MINIO_ACCESS_KEY="test",
        MINIO_SECRET_KEY="test",
        MINIO_BUCKET=BUCKET,
    )


@pytest.fixture
def s3() -> FakeS3Client:
    return FakeS3Client(buckets=[BUCKET])


@pytest.fixture
def storage(settings, s3) -> StorageService:
    return StorageService.from_settings(settings, client=s3)


@pytest.fixture
def app_instance(settings, storage):
    return create_app(settings, storage)


@pytest_asyncio.fixture
async def client(app_instance):
    transport = ASGITransport(app=app_instance)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
