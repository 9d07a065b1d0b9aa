from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Dict, List

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class StorageError(RuntimeError):
    """Raised when the object store cannot be reached or rejects a request."""


class ObjectStore:
    """Key/value blob store on S3, with a process-local memory fallback when unconfigured.

    The store offers no cross-key transactions; callers treat it as plain get/set.
    """

    def __init__(
        self,
        bucket: str,
        access_key: str | None,
        secret_key: str | None,
        endpoint_url: str | None = None,
        region_name: str | None = None,
        addressing_style: str | None = None,
    ) -> None:
        self.bucket = (bucket or "").strip()
        self.access_key = (access_key or "").strip()
        self.secret_key = (secret_key or "").strip()
        self.endpoint_url = (endpoint_url or "").rstrip("/") or None
        self.region_name = (region_name or "").strip() or None
        self._memory: Dict[str, bytes] = {}
        self._memory_modified: Dict[str, datetime] = {}
        self._memory_lock = threading.Lock()
        self._client = None
        if self.is_configured():
            session = boto3.session.Session(
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                region_name=self.region_name,
            )
            config = BotoConfig(
                s3={"addressing_style": (addressing_style or "virtual").lower()}
            )
            self._client = session.client("s3", endpoint_url=self.endpoint_url, config=config)

    def is_configured(self) -> bool:
        return bool(self.bucket and self.access_key and self.secret_key)

    def list(self, prefix: str | None = None) -> List[dict[str, Any]]:
        key_prefix = self._normalize_prefix(prefix)
        if self._client is None:
            return self._list_memory(key_prefix)
        contents: List[dict[str, Any]] = []
        kwargs: Dict[str, Any] = {"Bucket": self.bucket}
        if key_prefix:
            kwargs["Prefix"] = key_prefix
        continuation_token: str | None = None
        while True:
            if continuation_token:
                kwargs["ContinuationToken"] = continuation_token
            try:
                response = self._client.list_objects_v2(**kwargs)
            except (BotoCoreError, ClientError) as exc:
                raise StorageError(f"S3 list failed: {exc}") from exc
            for obj in response.get("Contents", []):
                key = obj.get("Key")
                if not key:
                    continue
                contents.append(
                    {
                        "key": key,
                        "size": obj.get("Size"),
                        "last_modified": obj.get("LastModified"),
                    }
                )
            if not response.get("IsTruncated"):
                break
            continuation_token = response.get("NextContinuationToken")
        return contents

    def get(self, key: str) -> bytes | None:
        key = self._normalize_key(key)
        if self._client is None:
            with self._memory_lock:
                return self._memory.get(key)
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                return None
            raise StorageError(f"S3 download failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"S3 download failed: {exc}") from exc
        body = response.get("Body")
        if body is None:
            return b""
        return body.read()

    def set(self, key: str, content: bytes, content_type: str = "application/json") -> None:
        key = self._normalize_key(key)
        if self._client is None:
            with self._memory_lock:
                self._memory[key] = content
                self._memory_modified[key] = datetime.now(timezone.utc)
            return
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"S3 upload failed: {exc}") from exc

    def _list_memory(self, prefix: str) -> List[dict[str, Any]]:
        with self._memory_lock:
            return [
                {
                    "key": key,
                    "size": len(data),
                    "last_modified": self._memory_modified.get(key),
                }
                for key, data in self._memory.items()
                if not prefix or key.startswith(prefix)
            ]

    def _normalize_key(self, path: str | None) -> str:
        if not path:
            return ""
        return "/".join(part for part in path.strip().split("/") if part)

    def _normalize_prefix(self, prefix: str | None) -> str:
        clean = self._normalize_key(prefix)
        if clean and prefix and prefix.rstrip().endswith("/"):
            clean += "/"
        return clean
