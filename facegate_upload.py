"""
FaceGate — Upload Pipeline
===========================
Two-stage authentication request:
  1. Write the JPEG to S3 under <namespace>/<uuid4>.jpg
  2. POST {bucket, key} to the verification endpoint

Stage 1 uses botocore's own transport retries (bounded timeout, N
retries). Stage 2 is attempted exactly once. The stages are not
transactional: a stored object whose verification fails stays in the
bucket.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

from facegate_errors import FaceGateError, NetworkError, RequestTimeoutError
from facegate_types import AuthenticationResult, UploadRequest

_log = logging.getLogger("FaceGateUpload")

CONTENT_TYPE_JPEG = "image/jpeg"


class UploadPipeline:
    """Object-store write followed by the verification RPC."""

    def __init__(
        self,
        bucket: str,
        verify_url: str,
        namespace: str = "search",
        region: str = "us-east-2",
        write_timeout_s: float = 5.0,
        max_retries: int = 3,
        verify_timeout_s: float = 10.0,
        store_client=None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.bucket = bucket
        self.verify_url = verify_url
        self.namespace = namespace.strip("/")
        self.region = region
        self.write_timeout_s = write_timeout_s
        self.max_retries = max_retries
        self.verify_timeout_s = verify_timeout_s
        self._store = store_client
        self._http = http or requests.Session()

    @classmethod
    def from_config(cls, cfg: dict, **kwargs) -> "UploadPipeline":
        return cls(
            bucket=cfg["bucket"],
            verify_url=cfg["verify_url"],
            namespace=cfg.get("namespace", "search"),
            region=cfg.get("region", "us-east-2"),
            write_timeout_s=float(cfg.get("write_timeout_s", 5.0)),
            max_retries=int(cfg.get("max_retries", 3)),
            verify_timeout_s=float(cfg.get("verify_timeout_s", 10.0)),
            **kwargs,
        )

    @property
    def store(self):
        if self._store is None:
            self._store = boto3.client(
                "s3",
                region_name=self.region,
                config=Config(
                    connect_timeout=self.write_timeout_s,
                    read_timeout=self.write_timeout_s,
                    retries={"max_attempts": self.max_retries, "mode": "standard"},
                ),
            )
        return self._store

    # ── Public API ────────────────────────────────────────────

    def new_request(self, blob: bytes) -> UploadRequest:
        key = f"{self.namespace}/{uuid.uuid4()}.jpg"
        return UploadRequest(blob=blob, bucket=self.bucket, key=key, content_type=CONTENT_TYPE_JPEG)

    def upload(self, blob: bytes) -> AuthenticationResult:
        """Store ``blob`` and ask the verification service about it.

        Never raises for transport failures; they become ERROR results.
        """
        request = self.new_request(blob)
        try:
            self._write(request)
            result = self._verify(request)
        except FaceGateError as e:
            _log.error("Upload failed [%s]: %s", e.kind, e)
            return AuthenticationResult.failure(e, key=request.key)

        _log.info("Verification response for %s: %s", request.key, result.message)
        return result

    # ── Stage 1: object store ─────────────────────────────────

    def _write(self, request: UploadRequest) -> None:
        try:
            self.store.put_object(
                Bucket=request.bucket,
                Key=request.key,
                Body=request.blob,
                ContentType=request.content_type,
            )
        except (ConnectTimeoutError, ReadTimeoutError, TimeoutError) as e:
            raise RequestTimeoutError(f"Authentication failed: storage write timed out ({e})", cause=e) from e
        except ClientError as e:
            message = e.response.get("Error", {}).get("Message") or str(e)
            raise NetworkError(f"Authentication failed: {message}", cause=e) from e
        except (BotoCoreError, OSError) as e:
            raise NetworkError(f"Authentication failed: {e}", cause=e) from e
        _log.info("Image uploaded: s3://%s/%s (%d bytes)", request.bucket, request.key, len(request.blob))

    # ── Stage 2: verification RPC ─────────────────────────────

    def _verify(self, request: UploadRequest) -> AuthenticationResult:
        payload = {"bucket": request.bucket, "key": request.key}
        try:
            response = self._http.post(self.verify_url, json=payload, timeout=self.verify_timeout_s)
        except requests.Timeout as e:
            raise RequestTimeoutError(f"Authentication failed: verification timed out ({e})", cause=e) from e
        except requests.RequestException as e:
            raise NetworkError(f"Authentication failed: {e}", cause=e) from e

        if not response.ok:
            message = self._server_message(response) or f"HTTP {response.status_code}"
            raise NetworkError(f"Authentication failed: {message}")

        try:
            data = response.json()
        except ValueError as e:
            raise NetworkError("Authentication failed: invalid verification response", cause=e) from e
        if not isinstance(data, dict):
            raise NetworkError("Authentication failed: invalid verification response")

        return AuthenticationResult.from_response(data, key=request.key)

    @staticmethod
    def _server_message(response: requests.Response) -> Optional[str]:
        try:
            data = response.json()
        except ValueError:
            return None
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return None
