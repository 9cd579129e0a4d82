"""Storage-write primitive used by the download queue."""

import asyncio
import base64
import binascii
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional, Tuple

import requests
from loguru import logger

from .ssl_config import build_session


# (downloaded_bytes, total_bytes, bytes_per_sec); total is 0 when unknown
ProgressCallback = Callable[[int, int, float], None]


class DownloadError(Exception):
    """Raised when an artifact cannot be fetched or written."""


class UnsupportedEnvironmentError(DownloadError):
    """Raised when a source reference cannot be saved from this process."""


def decode_data_url(source: str) -> Tuple[str, bytes]:
    """Split a base64 ``data:`` URL into its mime type and payload."""
    header, sep, payload = source.partition(",")
    if not sep or not header.startswith("data:") or ";base64" not in header:
        raise DownloadError("Malformed data URL")
    mime_type = header[len("data:"):].split(";")[0] or "application/octet-stream"
    try:
        return mime_type, base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DownloadError(f"Invalid base64 payload: {e}") from e


class ArtifactSaver(ABC):
    """Persists an artifact reference at a destination path."""

    @abstractmethod
    async def save(self, source: str, destination: str,
                   progress: Optional[ProgressCallback] = None) -> str:
        """Save ``source`` at ``destination`` and return the final path."""


class LocalFileSaver(ArtifactSaver):
    """Writes artifacts below a base directory on the local filesystem."""

    def __init__(self, base_dir: str, *, timeout: float = 60.0, verify_ssl: bool = True,
                 chunk_size: int = 64 * 1024, session: Optional[requests.Session] = None):
        """Initialize local file saver."""
        self.base_dir = Path(base_dir).expanduser().resolve()
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.session = session or build_session(verify_ssl)

    def validate(self) -> bool:
        """Validate that the base directory exists and is writable."""
        try:
            if not self.base_dir.exists():
                self.base_dir.mkdir(parents=True, exist_ok=True)
                logger.info(f"Created download directory: {self.base_dir}")

            test_file = self.base_dir / ".write_test"
            try:
                test_file.write_text("test")
                test_file.unlink()
                return True
            except OSError as e:
                logger.error(f"Download directory not writable: {e}")
                return False

        except OSError as e:
            logger.error(f"Download directory validation error: {e}")
            return False

    def resolve(self, destination: str) -> Path:
        """Absolute target path for ``destination``; it must stay inside the base directory."""
        target = (self.base_dir / destination).resolve()
        if target != self.base_dir and self.base_dir not in target.parents:
            raise DownloadError(f"Destination escapes download directory: {destination}")
        return target

    async def save(self, source: str, destination: str,
                   progress: Optional[ProgressCallback] = None) -> str:
        target = self.resolve(destination)

        if source.startswith("data:"):
            _, payload = decode_data_url(source)
            await asyncio.to_thread(self._write_bytes, target, payload)
            if progress:
                progress(len(payload), len(payload), 0.0)
            logger.info(f"Saved embedded image: {target}")
            return str(target)

        if not source.startswith(("http://", "https://")):
            raise UnsupportedEnvironmentError(f"Cannot save reference with this scheme: {source[:32]}")

        report = None
        if progress:
            loop = asyncio.get_running_loop()

            def report(downloaded: int, total: int, rate: float) -> None:
                loop.call_soon_threadsafe(progress, downloaded, total, rate)

        await asyncio.to_thread(self._fetch, source, target, report)
        logger.info(f"Downloaded {source} -> {target}")
        return str(target)

    def _write_bytes(self, target: Path, payload: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(payload)

    def _fetch(self, url: str, target: Path, report: Optional[ProgressCallback]) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        downloaded = 0
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                if not response.ok:
                    raise DownloadError(f"HTTP {response.status_code}: {response.reason}")

                content_type = response.headers.get("Content-Type", "")
                if content_type.startswith("text/html"):
                    raise DownloadError("Server returned an HTML page instead of an image")

                total = int(response.headers.get("Content-Length") or 0)
                started = time.monotonic()
                with open(target, "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if not chunk:
                            continue
                        f.write(chunk)
                        downloaded += len(chunk)
                        if report:
                            elapsed = time.monotonic() - started
                            rate = downloaded / elapsed if elapsed > 0 else 0.0
                            report(downloaded, total, rate)

            if downloaded == 0:
                raise DownloadError("Empty response body")

        except requests.RequestException as e:
            self._remove_partial(target)
            raise DownloadError(f"Request failed: {e}") from e
        except Exception:
            self._remove_partial(target)
            raise

    def _remove_partial(self, target: Path) -> None:
        try:
            if target.exists():
                target.unlink()
                logger.debug(f"Removed partial download: {target}")
        except OSError as e:
            logger.error(f"Failed to remove partial download {target}: {e}")
