"""
Streaming downloads for installers and model archives.

Bytes go to `<dest>.part` and are renamed into place only when complete.
A cancelled or failed download reports the partial path and leaves it for
the CleanupManager.
"""

import asyncio
import errno
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import aiofiles
import requests

from provisioner.core.exceptions import (
    DownloadError,
    ResourceExhaustedError,
    TransientIOError,
)
from provisioner.core.retry import retry_with_backoff

logger = logging.getLogger(__name__)

# (bytes_done, total_bytes_or_None)
ProgressCallback = Callable[[int, Optional[int]], None]

USER_AGENT = "ocr-env-provisioner/1.0"


@dataclass
class DownloadResult:
    path: Path
    partial_path: Path
    bytes_done: int
    total: Optional[int]
    completed: bool
    cancelled: bool = False


def partial_path_for(dest: Path) -> Path:
    return dest.with_name(dest.name + ".part")


class Downloader:
    def __init__(self, settings, session: Optional[requests.Session] = None):
        self.chunk_size = settings.DOWNLOAD_CHUNK_SIZE
        self.timeout = settings.DOWNLOAD_TIMEOUT_SECONDS
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)

        self._download = retry_with_backoff(
            max_attempts=settings.DOWNLOAD_MAX_ATTEMPTS,
            initial_delay=settings.DOWNLOAD_RETRY_DELAY_SECONDS,
            max_delay=10.0,
            exceptions=(TransientIOError,),
        )(self._download_once)

    async def download(
        self,
        url: str,
        dest: Path,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DownloadResult:
        """
        Fetch `url` into `dest`.

        Raises:
            DownloadError: 4xx response or unusable URL (not retried)
            TransientIOError: network trouble that survived all retries
            ResourceExhaustedError: disk full
        """
        dest = Path(dest)
        logger.info(f"📥 Downloading {url} -> {dest}")
        result = await self._download(url, dest, on_progress, cancel_event)
        if result.completed:
            logger.info(f"✅ Download complete: {dest.name} ({result.bytes_done / 1024 / 1024:.1f} MB)")
        elif result.cancelled:
            logger.info(f"Download cancelled after {result.bytes_done} bytes, partial file: {result.partial_path}")
        return result

    async def _download_once(
        self,
        url: str,
        dest: Path,
        on_progress: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
    ) -> DownloadResult:
        partial = partial_path_for(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        context = {"url": url, "partial_path": str(partial)}

        try:
            response = await asyncio.to_thread(self.session.get, url, stream=True, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientIOError(f"Could not reach {url}: {e}", context=context) from e
        except requests.RequestException as e:
            raise DownloadError(f"Invalid download request for {url}: {e}", context=context) from e

        done = 0
        total: Optional[int] = None
        try:
            self._raise_for_status(response, url, context)

            length = response.headers.get("Content-Length")
            total = int(length) if length and length.isdigit() else None
            chunks = response.iter_content(chunk_size=self.chunk_size)

            async with aiofiles.open(partial, "wb") as f:
                while True:
                    if cancel_event is not None and cancel_event.is_set():
                        return DownloadResult(dest, partial, done, total, completed=False, cancelled=True)

                    chunk = await asyncio.to_thread(next, chunks, None)
                    if chunk is None:
                        break
                    if not chunk:
                        continue

                    await f.write(chunk)
                    done += len(chunk)
                    if on_progress:
                        on_progress(done, total)

        except (requests.ConnectionError, requests.Timeout, requests.exceptions.ChunkedEncodingError) as e:
            raise TransientIOError(
                f"Download of {url} interrupted after {done} bytes: {e}",
                context=context
            ) from e
        except OSError as e:
            if e.errno == errno.ENOSPC:
                raise ResourceExhaustedError(
                    f"Disk full while writing {partial}",
                    context=context
                ) from e
            raise
        finally:
            response.close()

        if total is not None and done < total:
            raise TransientIOError(
                f"Download of {url} truncated: {done} of {total} bytes",
                context=context
            )

        os.replace(partial, dest)
        return DownloadResult(dest, partial, done, total, completed=True)

    @staticmethod
    def _raise_for_status(response, url: str, context: dict) -> None:
        status = response.status_code
        if status < 400:
            return
        context = {**context, "status_code": status}
        if status >= 500 or status in (408, 429):
            retry_after = response.headers.get("Retry-After", "")
            if retry_after.isdigit():
                context["retry_after"] = int(retry_after)
            raise TransientIOError(f"Server returned {status} for {url}", context=context)
        raise DownloadError(f"Server returned {status} for {url}", context=context)

    def close(self) -> None:
        self.session.close()
