# ABOUTME: Google Cloud Storage JSON API client with retry logic
# ABOUTME: Removes terraform state lock files and stores database dumps

"""
Cloud Storage client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Terraform state for every unit lives in one GCS bucket under
`<id>/<global|env>/terraform/<component>/`. When an apply is interrupted,
terraform leaves `default.tflock` behind and every later run refuses to
start. `run terraform unlock` removes it through this client.
`run db postgres backup` uploads dumps to the project bucket, keeping the
previous dump under `backup/`.

Only the handful of JSON API endpoints needed are wrapped:

    GET    /storage/v1/b/{bucket}/o/{object}          object metadata
    GET    /storage/v1/b/{bucket}/o?prefix=...        list objects
    DELETE /storage/v1/b/{bucket}/o/{object}          delete object
    POST   /storage/v1/b/{bucket}/o/{object}/copyTo/b/{bucket}/o/{dest}
    POST   /upload/storage/v1/b/{bucket}/o?uploadType=media&name=...

Authentication is a Bearer OAuth token: GCP_ACCESS_TOKEN when set,
otherwise whatever `gcloud auth print-access-token` returns.

=============================================================================
RETRIES
=============================================================================

Timeouts are retried (3 attempts, exponential backoff). HTTP errors are not:
a 403 will still be a 403 a second later. 404 is reported as "absent" by
the methods where absence is an expected answer.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from metarun.errors import ConfigurationError, RunError

if TYPE_CHECKING:
    import os

    from metarun.config import RunSettings
    from metarun.utils.shell import ShellRunner

logger = structlog.get_logger(__name__)

STORAGE_URL = "https://storage.googleapis.com"


class StorageError(RunError):
    """Cloud Storage API error."""

    code = "storage"

    def __init__(self, status: int, message: str, details: str | None = None) -> None:
        self.status = status
        self.reason = details
        super().__init__(message, {"status": status})

    def __str__(self) -> str:
        base = f"Cloud Storage error ({self.status}): {self.message}"
        if self.reason:
            base += f" - {self.reason}"
        return base


def resolve_access_token(
    settings: RunSettings,
    runner: ShellRunner,
    cwd: str | os.PathLike[str],
) -> str:
    """Return GCP_ACCESS_TOKEN, or ask gcloud for one."""
    token = settings.gcp_access_token.get_secret_value()
    if token:
        return token
    token = runner.output(["gcloud", "auth", "print-access-token"], cwd)
    if not token:
        raise ConfigurationError("no GCP access token (set GCP_ACCESS_TOKEN or log in with gcloud)")
    return token


class StorageClient:
    """
    Async Cloud Storage client for a single bucket.

    USAGE:
    ------
        async with StorageClient("tf-state", token) as storage:
            if await storage.object_exists("abc/dev/terraform/core/default.tflock"):
                await storage.delete_object("abc/dev/terraform/core/default.tflock")
    """

    def __init__(
        self,
        bucket: str,
        token: str,
        base_url: str = STORAGE_URL,
        timeout: float = 30.0,
    ) -> None:
        if not bucket:
            raise ConfigurationError("TERRAFORM_BUCKET_NAME is not set")
        self.bucket = bucket
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> StorageClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {self._token}"},
            timeout=self._timeout,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _object_path(self, name: str) -> str:
        return f"/storage/v1/b/{self.bucket}/o/{quote(name, safe='')}"

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
    )
    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """
        Make an HTTP request and convert 4xx/5xx into StorageError.

        Raises:
            StorageError: On API error
            httpx.TimeoutException: On timeout after retries
            RuntimeError: If used outside `async with`
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        log = logger.bind(method=method, path=path, bucket=self.bucket)
        log.debug("Making Cloud Storage request")

        response = await self._client.request(
            method,
            path,
            params=params,
            content=content,
            headers=headers,
        )

        if response.status_code >= 400:
            body = response.text
            log.debug("Cloud Storage error", status=response.status_code, body=body[:200])
            message = f"HTTP {response.status_code}"
            details = None
            try:
                payload = response.json()
            except ValueError:
                details = body[:200] if body else None
            else:
                error = payload.get("error") if isinstance(payload, dict) else None
                if isinstance(error, dict):
                    message = error.get("message", message)
            raise StorageError(response.status_code, message, details)

        return response

    async def object_exists(self, name: str) -> bool:
        try:
            await self._request("GET", self._object_path(name))
        except StorageError as err:
            if err.status == 404:
                return False
            raise
        return True

    async def list_objects(self, prefix: str) -> list[str]:
        """Names of the objects under a prefix (first page only, up to 1000)."""
        response = await self._request(
            "GET",
            f"/storage/v1/b/{self.bucket}/o",
            params={"prefix": prefix},
        )
        return [item["name"] for item in response.json().get("items", [])]

    async def delete_object(self, name: str) -> bool:
        """
        Delete an object.

        Returns:
            True if it was deleted, False if it did not exist.
        """
        try:
            await self._request("DELETE", self._object_path(name))
        except StorageError as err:
            if err.status == 404:
                logger.info("object already absent", bucket=self.bucket, name=name)
                return False
            raise
        logger.info("object deleted", bucket=self.bucket, name=name)
        return True

    async def copy_object(self, source: str, destination: str) -> dict[str, Any]:
        """Copy an object to another name in the same bucket."""
        response = await self._request(
            "POST",
            f"{self._object_path(source)}/copyTo/b/{self.bucket}/o/{quote(destination, safe='')}",
        )
        logger.info("object copied", bucket=self.bucket, source=source, destination=destination)
        return response.json()

    async def upload_object(
        self,
        name: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> dict[str, Any]:
        """Upload bytes as an object (simple media upload)."""
        response = await self._request(
            "POST",
            f"/upload/storage/v1/b/{self.bucket}/o",
            params={"uploadType": "media", "name": name},
            content=data,
            headers={"Content-Type": content_type},
        )
        return response.json()
