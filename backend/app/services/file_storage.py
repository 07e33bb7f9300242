"""
File storage for prospect uploads and extracted images.

Files live on local disk under ``UPLOAD_DIR`` and are served at ``/uploads``.
Prospects registered with an external ``file_url`` are fetched over HTTP.
Private and internal addresses are refused, both as literals and as the
addresses a hostname resolves to. The resolved address is not pinned for
the request itself, so a host that re-resolves between the check and the
fetch is not caught.
"""

import asyncio
import hashlib
import html
import ipaddress
import logging
import re
import uuid
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)

PUBLIC_PREFIX = "/uploads"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class StorageError(Exception):
    """Raised when a stored file cannot be written or read."""


class UnsafeURLError(StorageError):
    """Raised for URLs pointing at private or internal hosts."""


def compute_file_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def safe_filename(filename: str) -> str:
    name = _UNSAFE_CHARS.sub("_", Path(filename or "file").name).strip("._")
    return name[:120] or "file"


def is_private_url(url: str) -> bool:
    """True for localhost, loopback, private, link-local and unparseable URLs."""
    try:
        hostname = (urlparse(url).hostname or "").lower()
    except ValueError:
        return True

    if not hostname:
        return True
    if hostname in ("localhost", "::1") or hostname.endswith(".localhost"):
        return True

    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False

    return is_private_address(address)


def is_private_address(address) -> bool:
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
        or (address.version == 4 and address.packed[0] == 0)
    )


async def resolve_host(hostname: str) -> List[str]:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, None)
    except OSError as e:
        raise StorageError(f"Could not resolve host {hostname}: {e}") from e
    # IPv6 link-local results carry a "%scope" suffix
    return sorted({info[4][0].split("%")[0] for info in infos})


async def resolves_to_private(url: str) -> bool:
    """True when any address the URL's host resolves to is private or internal."""
    hostname = urlparse(url).hostname
    addresses = await resolve_host(hostname)
    return any(is_private_address(ipaddress.ip_address(a)) for a in addresses)


class FileStorage:
    """Local-disk file store. One instance lives on ``app.state`` for the app's lifetime."""

    def __init__(self, root: str, public_prefix: str = PUBLIC_PREFIX, max_download_bytes: Optional[int] = None):
        self.root = Path(root)
        self.public_prefix = public_prefix.rstrip("/")
        self.max_download_bytes = max_download_bytes

    def _path_for(self, file_url: str) -> Path:
        relative = file_url[len(self.public_prefix):].lstrip("/")
        path = (self.root / relative).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Path escapes storage root: {file_url}")
        return path

    def _write(self, path: Path, data: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def save(self, data: bytes, filename: str, folder: str = "prospects") -> str:
        """Write bytes and return the public URL."""
        name = f"{uuid.uuid4().hex[:12]}_{safe_filename(filename)}"
        relative = f"{folder.strip('/')}/{name}"
        path = self.root / relative

        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            raise StorageError(f"Could not store {filename}: {e}") from e

        logger.info(f"Stored {len(data)} bytes at {relative}")
        return f"{self.public_prefix}/{relative}"

    async def read(self, file_url: str) -> bytes:
        """Load a file by the URL recorded on the prospect."""
        file_url = html.unescape(file_url or "")

        if file_url.startswith(self.public_prefix + "/"):
            path = self._path_for(file_url)
            try:
                return await asyncio.to_thread(path.read_bytes)
            except OSError as e:
                raise StorageError(f"Stored file not found: {file_url}") from e

        if not file_url.startswith(("http://", "https://")):
            raise StorageError("Invalid file URL format - only HTTP URLs are supported")

        if is_private_url(file_url) or await resolves_to_private(file_url):
            raise UnsafeURLError("Access to private/internal URLs is not allowed")

        return await self._download(file_url)

    def _too_large(self) -> StorageError:
        return StorageError(f"Remote file is larger than {self.max_download_bytes // (1024 * 1024)}MB")

    async def _download(self, url: str) -> bytes:
        """Stream a remote file, giving up as soon as it exceeds ``max_download_bytes``."""
        limit = self.max_download_bytes
        chunks, total = [], 0
        try:
            async with httpx.AsyncClient(timeout=60.0, follow_redirects=False) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()

                    declared = response.headers.get("content-length", "")
                    if limit and declared.isdigit() and int(declared) > limit:
                        raise self._too_large()

                    async for chunk in response.aiter_bytes():
                        total += len(chunk)
                        if limit and total > limit:
                            raise self._too_large()
                        chunks.append(chunk)
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to fetch file: {e}") from e

        return b"".join(chunks)

    async def delete(self, file_url: str) -> bool:
        if not file_url or not file_url.startswith(self.public_prefix + "/"):
            return False
        path = self._path_for(file_url)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        return True
