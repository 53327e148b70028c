"""
Device image cache.

Downloads representative device images once and keeps them on disk under a
short hash key, with an index.json describing every cached file. The cache is
bounded by a total byte budget (oldest files go first) and a maximum age.
"""

from __future__ import annotations
import asyncio
import hashlib
import io
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol

import httpx
from PIL import Image

from .errors import CacheIOError, FetchTimeout, ImageValidationError, InvalidCacheKeyError, NetworkError
from .models import CleanupCounts, DeviceIdentity, ImageCacheEntry, ImageCacheStats
from .single_flight import SingleFlight
from .storage import atomic_write_bytes, atomic_write_json, read_json, remove_file

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.json"

MIN_IMAGE_BYTES = 8

THUMBNAIL_SIZE = 128
THUMBNAIL_SUFFIX = "_thumb"

_KEY_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

_MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
}


def _hash_key(*parts: str) -> str:
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return digest[:16]


def cache_key(identity: DeviceIdentity, hint: Optional[str] = None) -> str:
    """Stable 16-hex key for a device model, optionally narrowed by a hint.

    Serial and location are left out so identical devices share an image.
    """
    return _hash_key(identity.bus.value, identity.vendor_id, identity.product_id, (hint or "").strip().lower())


def cache_key_for_url(url: str) -> str:
    """Key for an image identified only by its URL."""
    return _hash_key(url)


def device_cache_key(device_type: str, manufacturer: str, model: str) -> str:
    """Key from free-text device type, manufacturer and model (case-insensitive)."""
    return _hash_key(device_type.lower(), manufacturer.lower(), model.lower())


def detect_image_type(data: bytes) -> Optional[str]:
    """Return the MIME type implied by the magic bytes, or None."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"GIF87a") or data.startswith(b"GIF89a"):
        return "image/gif"
    if len(data) >= 12 and data.startswith(b"RIFF") and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def validate_image(data: bytes, max_bytes: int) -> str:
    """Check downloaded bytes and return their MIME type.

    Raises:
        ImageValidationError: if the data is too small, too large or not PNG,
            JPEG, GIF or WebP
    """
    if len(data) < MIN_IMAGE_BYTES:
        raise ImageValidationError("Image too small to be valid")
    if len(data) > max_bytes:
        raise ImageValidationError(f"Image exceeds maximum size of {max_bytes} bytes")
    mime = detect_image_type(data)
    if mime is None:
        raise ImageValidationError("Invalid or unsupported image format")
    return mime


def mime_to_extension(mime: Optional[str]) -> str:
    if not mime:
        return "jpg"
    return _MIME_EXTENSIONS.get(mime.split(";", 1)[0].strip().lower(), "jpg")


def validate_cache_key(key: str) -> str:
    """Check that key can be used as a file name inside the cache directory.

    Raises:
        InvalidCacheKeyError: if key has characters other than letters, digits,
            '-' and '_', is longer than 64 characters, or ends in the
            thumbnail suffix
    """
    if not _KEY_RE.match(key) or key.endswith(THUMBNAIL_SUFFIX):
        raise InvalidCacheKeyError(f"Invalid image cache key: {key!r}")
    return key


def make_thumbnail(image_path: Path, thumb_path: Path, size: int = THUMBNAIL_SIZE) -> int:
    """Write a PNG thumbnail no larger than size x size; returns its byte count.

    Blocking, so callers run it in a worker thread.
    """
    with Image.open(image_path) as image:
        if image.mode not in ("RGB", "RGBA", "L", "LA", "P"):
            image = image.convert("RGBA")
        image.thumbnail((size, size))
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
    data = buffer.getvalue()
    atomic_write_bytes(thumb_path, data)
    return len(data)


@dataclass
class ImageBlob:
    data: bytes
    content_type: Optional[str] = None
    source_url: Optional[str] = None


class ImageSource(Protocol):
    """Remote provider of device images."""

    async def fetch_image(self, identity: DeviceIdentity, hint: Optional[str] = None) -> ImageBlob:
        ...

    async def fetch_url(self, url: str) -> ImageBlob:
        ...


class HttpImageSource:
    """Downloads images with httpx.

    The URL is the hint when the hint is itself an http(s) URL, otherwise
    url_template formatted with the identity fields (bus, vendor_id,
    product_id, manufacturer, model, device_type, hint).
    """

    def __init__(
        self,
        url_template: Optional[str] = None,
        timeout: float = 30.0,
        user_agent: str = "device-lens",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url_template = url_template
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": user_agent},
            follow_redirects=True,
        )

    def resolve_url(self, identity: DeviceIdentity, hint: Optional[str] = None) -> str:
        if hint and hint.startswith(("http://", "https://")):
            return hint
        if not self.url_template:
            raise NetworkError(f"No image URL known for {identity.device_key}", source="images")
        return self.url_template.format(
            bus=identity.bus.value,
            vendor_id=identity.vendor_id,
            product_id=identity.product_id,
            manufacturer=identity.manufacturer or "",
            model=identity.model or "",
            device_type=identity.device_type or "",
            hint=hint or "",
        )

    async def fetch_image(self, identity: DeviceIdentity, hint: Optional[str] = None) -> ImageBlob:
        return await self.fetch_url(self.resolve_url(identity, hint))

    async def fetch_url(self, url: str) -> ImageBlob:
        try:
            response = await self._client.get(url)
        except httpx.TimeoutException as e:
            raise FetchTimeout(f"Timed out fetching {url}", source="images") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to fetch {url}: {e}", source="images") from e

        if not response.is_success:
            raise NetworkError(f"HTTP error: {response.status_code} for {url}", source="images")
        return ImageBlob(
            data=response.content,
            content_type=response.headers.get("content-type"),
            source_url=str(response.url),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class ImageCache:
    """On-disk image cache keyed by short hashes.

    Args:
        root: directory holding image files and index.json
        source: where images are downloaded from on a miss
        max_total_bytes: byte budget for all cached files
        max_image_bytes: largest single image accepted
        max_age_seconds: age after which cleanup() evicts a file
        timeout_seconds: upper bound for one download
        thumbnail_size: longest edge of the PNG thumbnail made for each image
    """

    def __init__(
        self,
        root: Path,
        source: ImageSource,
        max_total_bytes: int = 500 * 1024 * 1024,
        max_image_bytes: int = 10 * 1024 * 1024,
        max_age_seconds: float = 90 * 24 * 60 * 60,
        timeout_seconds: float = 30.0,
        thumbnail_size: int = THUMBNAIL_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        self.root = root
        self.source = source
        self.max_total_bytes = max_total_bytes
        self.max_image_bytes = max_image_bytes
        self.max_age_seconds = max_age_seconds
        self.timeout_seconds = timeout_seconds
        self.thumbnail_size = thumbnail_size
        self._clock = clock
        self._entries: dict[str, ImageCacheEntry] = {}
        self._flight = SingleFlight("image-fetch")

        self.hits = 0
        self.misses = 0
        self.downloads = 0
        self.download_failures = 0

        self.root.mkdir(parents=True, exist_ok=True)
        self._load_index()

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILENAME

    def _load_index(self) -> None:
        if self.index_path.exists():
            try:
                data = read_json(self.index_path)
                entries = {key: ImageCacheEntry.model_validate(value) for key, value in data.items()}
            except (OSError, ValueError, AttributeError) as e:
                logger.warning(f"Discarding unreadable image index {self.index_path}: {e}")
                entries = {}

            for key, entry in entries.items():
                path = Path(entry.file_path)
                if path.parent.resolve() != self.root.resolve() or not path.exists():
                    continue
                if entry.thumbnail_path and not Path(entry.thumbnail_path).exists():
                    entry = entry.model_copy(update={"thumbnail_path": None, "thumbnail_bytes": 0})
                self._entries[key] = entry
            logger.info(f"Loaded image cache index: {len(self._entries)} images")

        self._remove_orphans()

    def _remove_orphans(self) -> int:
        """Delete image files and stale temp files that no index entry refers to."""
        known = set()
        for entry in self._entries.values():
            known.add(Path(entry.file_path).name)
            if entry.thumbnail_path:
                known.add(Path(entry.thumbnail_path).name)

        extensions = set(_MIME_EXTENSIONS.values())
        removed = 0
        for path in self.root.iterdir():
            if not path.is_file() or path.name == INDEX_FILENAME or path.name in known:
                continue
            stale_temp = path.name.startswith(".") and path.suffix == ".tmp"
            if not stale_temp and path.suffix.lstrip(".").lower() not in extensions:
                continue
            remove_file(path)
            removed += 1
        if removed:
            logger.info(f"Removed {removed} orphaned files from {self.root}")
        return removed

    def _save_index(self) -> None:
        data = {key: entry.model_dump(mode="json") for key, entry in self._entries.items()}
        try:
            atomic_write_json(self.index_path, data)
        except CacheIOError as e:
            logger.warning(f"Failed to save image cache index: {e}")

    def is_cached(self, key: str) -> bool:
        return self.get_cached_path(key) is not None

    def get_cached_path(self, key: str) -> Optional[Path]:
        """Path of the cached file for key, if it is indexed and still on disk."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        path = Path(entry.file_path)
        return path if path.exists() else None

    def get_thumbnail_path(self, key: str) -> Optional[Path]:
        entry = self.get_entry(key)
        if entry is None or not entry.thumbnail_path:
            return None
        path = Path(entry.thumbnail_path)
        return path if path.exists() else None

    def get_entry(self, key: str) -> Optional[ImageCacheEntry]:
        if self.get_cached_path(key) is None:
            return None
        return self._entries[key]

    async def fetch(
        self,
        identity: DeviceIdentity,
        hint: Optional[str] = None,
        key: Optional[str] = None,
    ) -> ImageCacheEntry:
        """Return the cached image for identity, downloading it on a miss.

        Raises:
            InvalidCacheKeyError: key is not usable as a file name
            NetworkError: download failed or timed out (FetchTimeout)
            ImageValidationError: the downloaded bytes are not a usable image
            CacheIOError: the file could not be written
        """
        key = key or cache_key(identity, hint)
        return await self._get_or_download(key, lambda: self.source.fetch_image(identity, hint))

    async def fetch_url(self, url: str, key: Optional[str] = None) -> ImageCacheEntry:
        """Like fetch, for an explicit image URL."""
        key = key or cache_key_for_url(url)
        return await self._get_or_download(key, lambda: self.source.fetch_url(url))

    async def _get_or_download(
        self,
        key: str,
        download: Callable[[], Awaitable[ImageBlob]],
    ) -> ImageCacheEntry:
        validate_cache_key(key)
        entry = self.get_entry(key)
        if entry is not None:
            self.hits += 1
            logger.debug(f"Image cache hit for {key}")
            return entry

        self.misses += 1
        return await self._flight.do(key, lambda: self._download(key, download))

    async def _download(
        self,
        key: str,
        download: Callable[[], Awaitable[ImageBlob]],
    ) -> ImageCacheEntry:
        try:
            blob = await asyncio.wait_for(download(), timeout=self.timeout_seconds)
            mime = validate_image(blob.data, self.max_image_bytes)
            if len(blob.data) > self.max_total_bytes:
                raise ImageValidationError(f"Image exceeds cache budget of {self.max_total_bytes} bytes")

            path = self.root / f"{key}.{mime_to_extension(mime)}"
            atomic_write_bytes(path, blob.data)
        except asyncio.TimeoutError as e:
            self.download_failures += 1
            logger.warning(f"Image download for {key} timed out after {self.timeout_seconds}s")
            raise FetchTimeout(f"Image download timed out after {self.timeout_seconds}s", source="images") from e
        except (NetworkError, ImageValidationError, CacheIOError) as e:
            self.download_failures += 1
            logger.warning(f"Image download for {key} failed: {e}")
            raise

        thumb_path: Optional[Path] = self.root / f"{key}{THUMBNAIL_SUFFIX}.png"
        try:
            thumb_bytes = await asyncio.to_thread(make_thumbnail, path, thumb_path, self.thumbnail_size)
        except (OSError, SyntaxError, ValueError, Image.DecompressionBombError, CacheIOError) as e:
            logger.warning(f"Could not make thumbnail for {key}: {e}")
            remove_file(thumb_path)
            thumb_path, thumb_bytes = None, 0

        previous = self._entries.get(key)
        if previous is not None and Path(previous.file_path) != path:
            remove_file(Path(previous.file_path))

        entry = ImageCacheEntry(
            cache_key=key,
            file_path=str(path),
            fetched_at=self._clock(),
            size_bytes=len(blob.data),
            source_url=blob.source_url,
            content_type=mime,
            thumbnail_path=str(thumb_path) if thumb_path else None,
            thumbnail_bytes=thumb_bytes,
        )
        self._entries[key] = entry

        self._evict_oldest(self.max_total_bytes, keep=key)
        if self.total_bytes() > self.max_total_bytes and thumb_path is not None:
            remove_file(thumb_path)
            entry = entry.model_copy(update={"thumbnail_path": None, "thumbnail_bytes": 0})
            self._entries[key] = entry

        self._save_index()
        self.downloads += 1
        logger.info(f"Cached image {key} ({entry.size_bytes} bytes)")
        return entry

    def total_bytes(self) -> int:
        return sum(_entry_bytes(entry) for entry in self._entries.values())

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            remove_file(Path(entry.file_path))
            if entry.thumbnail_path:
                remove_file(Path(entry.thumbnail_path))

    def _evict_oldest(self, budget: int, keep: Optional[str] = None) -> int:
        """Remove oldest entries, other than keep, until the total is within budget."""
        removed = 0
        total = self.total_bytes()
        for entry in sorted(self._entries.values(), key=lambda e: e.fetched_at):
            if total <= budget:
                break
            if entry.cache_key == keep:
                continue
            self._remove(entry.cache_key)
            total -= _entry_bytes(entry)
            removed += 1
        return removed

    def cleanup(
        self,
        max_total_bytes: Optional[int] = None,
        max_age: Optional[float] = None,
    ) -> CleanupCounts:
        """Evict oldest-first until under the byte budget, then anything past max_age.

        Both limits default to the configured values. Entries whose file has
        disappeared are dropped from the index as well, along with their
        thumbnails.
        """
        budget = max_total_bytes if max_total_bytes is not None else self.max_total_bytes
        max_age = max_age if max_age is not None else self.max_age_seconds

        missing = [key for key, entry in self._entries.items() if not Path(entry.file_path).exists()]
        for key in missing:
            self._remove(key)
        removed = len(missing)

        removed += self._evict_oldest(budget)

        cutoff = self._clock() - max_age
        for key in [k for k, e in self._entries.items() if e.fetched_at < cutoff]:
            self._remove(key)
            removed += 1

        if removed:
            self._save_index()
            logger.info(f"Image cache cleanup: removed {removed}, retained {len(self._entries)}")
        return CleanupCounts(removed=removed, retained=len(self._entries))

    def stats(self) -> ImageCacheStats:
        return ImageCacheStats(
            entry_count=len(self._entries),
            total_bytes=self.total_bytes(),
            hits=self.hits,
            misses=self.misses,
            downloads=self.downloads,
            download_failures=self.download_failures,
            cache_dir=str(self.root),
        )


def _entry_bytes(entry: ImageCacheEntry) -> int:
    return entry.size_bytes + entry.thumbnail_bytes
