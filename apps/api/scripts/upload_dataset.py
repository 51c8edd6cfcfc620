"""Upload a reference dataset in chunks and trigger processing.

Usage:
    python scripts/upload_dataset.py data.csv --dataset-type dyslexia --token <session token>
"""

import argparse
import asyncio
import logging
import math
import mimetypes
import os
import sys
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

# Add parent dir to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from log_config import configure_logging

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024
MAX_RETRIES = 3
RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class UploadClientError(Exception):
    """Raised when the API rejects a request or retries are exhausted."""


class DatasetUploadClient:
    """Thin async client for the chunked upload and dataset processing API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_retries: int = MAX_RETRIES,
        backoff_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        timeout: float = 120.0,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self.max_retries = max(int(max_retries), 0)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
            timeout=timeout,
        )

    async def __aenter__(self) -> "DatasetUploadClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            return str(response.json().get("detail") or response.text)
        except ValueError:
            return response.text

    async def _request_json(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        response = await self._client.request(method, url, **kwargs)
        if response.status_code >= 400:
            raise UploadClientError(f"{method} {url} failed ({response.status_code}): {self._detail(response)}")
        return response.json()

    async def init_upload(
        self,
        file_name: str,
        file_size: int,
        mime_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "fileName": file_name,
            "fileSize": file_size,
            "chunkSize": self.chunk_size,
        }
        if mime_type:
            payload["mimeType"] = mime_type
        if metadata:
            payload["metadata"] = metadata
        return await self._request_json("POST", "/uploads/init", json=payload)

    async def upload_chunk(self, upload_id: str, chunk_index: int, data: bytes) -> Dict[str, Any]:
        """Send one chunk, retrying transport errors and retryable statuses with linear backoff."""
        last_error = ""
        for attempt in range(self.max_retries + 1):
            if attempt:
                logger.warning("Chunk %s attempt %s failed (%s), retrying", chunk_index, attempt, last_error)
                await self._sleep(self.backoff_seconds * attempt)
            try:
                response = await self._client.post(
                    "/uploads/chunk",
                    data={"uploadId": upload_id, "chunkIndex": str(chunk_index)},
                    files={"chunk": (f"chunk_{chunk_index}", data, "application/octet-stream")},
                )
            except httpx.TransportError as exc:
                last_error = str(exc) or exc.__class__.__name__
            else:
                if response.status_code < 400:
                    return response.json()
                last_error = f"{response.status_code}: {self._detail(response)}"
                if response.status_code not in RETRYABLE_STATUS:
                    raise UploadClientError(f"Chunk {chunk_index} rejected ({last_error})")

        raise UploadClientError(f"Chunk {chunk_index} failed after {self.max_retries + 1} attempts: {last_error}")

    async def upload_file(
        self,
        path: str,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> str:
        """Upload a file chunk by chunk and return its upload id."""
        file_size = os.path.getsize(path)
        if file_size <= 0:
            raise UploadClientError(f"{path} is empty")
        mime_type, _ = mimetypes.guess_type(path)
        session = await self.init_upload(os.path.basename(path), file_size, mime_type=mime_type)
        upload_id = session["uploadId"]
        total_chunks = int(session.get("totalChunks") or math.ceil(file_size / self.chunk_size))
        chunk_size = int(session.get("chunkSize") or self.chunk_size)

        with open(path, "rb") as handle:
            for chunk_index in range(total_chunks):
                data = handle.read(chunk_size)
                if not data:
                    break
                await self.upload_chunk(upload_id, chunk_index, data)
                if on_progress is not None:
                    on_progress(chunk_index + 1, total_chunks)
        return upload_id

    async def process(self, dataset_type: str, upload_id: str) -> Dict[str, Any]:
        return await self._request_json(
            "POST",
            "/datasets/process",
            json={"datasetType": dataset_type, "uploadId": upload_id},
        )


def _print_progress(done: int, total: int) -> None:
    print(f"📦 Uploaded chunk {done}/{total} ({round(done / total * 100)}%)")


async def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Upload a reference dataset and calibrate thresholds.")
    parser.add_argument("path", help="CSV or JSON dataset file")
    parser.add_argument("--dataset-type", required=True, choices=["dyslexia", "adhd", "dysgraphia"])
    parser.add_argument("--api-url", default=os.environ.get("SCC_API_URL", "http://localhost:8000"))
    parser.add_argument("--token", default=os.environ.get("SCC_SESSION_TOKEN", ""))
    parser.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE)
    parser.add_argument("--no-process", action="store_true", help="Upload only; skip threshold calibration")
    args = parser.parse_args(argv)

    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))
    if not args.token:
        parser.error("--token (or SCC_SESSION_TOKEN) is required")

    async with DatasetUploadClient(args.api_url, args.token, chunk_size=args.chunk_size) as client:
        try:
            upload_id = await client.upload_file(args.path, on_progress=_print_progress)
            print(f"✅ Upload complete: {upload_id}")
            if args.no_process:
                return 0
            report = await client.process(args.dataset_type, upload_id)
        except (UploadClientError, OSError) as exc:
            print(f"❌ ERROR: {exc}")
            return 1

    print(
        f"📊 Processed {report['profilesInserted']} profiles "
        f"({report['positiveCount']} positive / {report['negativeCount']} negative), "
        f"{report['thresholdsComputed']} thresholds computed"
    )
    for item in report.get("thresholdsSummary", []):
        print(f"   - {item['metric']}: threshold={item['optimalThreshold']} weight={item['weight']}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
