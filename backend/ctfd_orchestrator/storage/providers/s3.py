import hashlib
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ctfd_orchestrator.errors import ObjectUnavailable


@dataclass
class StoredObject:
    bucket: str
    key: str
    content: bytes
    content_type: str = ""
    etag: str = ""

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.content).hexdigest()


class S3ObjectStore:
    provider_type = "s3"

    def __init__(self, region: str = "", client: Any = None, max_bytes: int = 5 * 1024 * 1024):
        self.region = (region or "").strip()
        self.max_bytes = max_bytes
        if client is not None:
            self.client = client
        else:
            try:
                self.client = boto3.client("s3", region_name=self.region) if self.region else boto3.client("s3")
            except BotoCoreError as exc:
                raise ObjectUnavailable(f"object store client unavailable: {exc.__class__.__name__}: {exc}") from exc

    def get_object(self, bucket: str, key: str) -> StoredObject:
        if not bucket or not key:
            raise ObjectUnavailable("bucket and key are required")
        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code") or exc.__class__.__name__)
            raise ObjectUnavailable(f"s3://{bucket}/{key}: {code}") from exc
        except BotoCoreError as exc:
            raise ObjectUnavailable(f"s3://{bucket}/{key}: {exc.__class__.__name__}") from exc
        size = int(response.get("ContentLength") or 0)
        if size > self.max_bytes:
            raise ObjectUnavailable(f"s3://{bucket}/{key}: object too large ({size} bytes)")
        body = response["Body"]
        try:
            content = body.read()
        except BotoCoreError as exc:
            raise ObjectUnavailable(f"s3://{bucket}/{key}: read failed ({exc.__class__.__name__})") from exc
        finally:
            close = getattr(body, "close", None)
            if close:
                close()
        return StoredObject(
            bucket=bucket,
            key=key,
            content=content,
            content_type=str(response.get("ContentType") or ""),
            etag=str(response.get("ETag") or "").strip('"'),
        )
