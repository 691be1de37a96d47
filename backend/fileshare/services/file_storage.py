"""File storage for the upload directory.

Bytes are written with aiofiles to a hidden `.part` file and renamed into
place, so the watcher never reports a half-written upload. Stored names are
`{epoch_ms}-{random hex}-{sanitized original name}`.
"""
import logging
import re
import stat as stat_mode
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Protocol

import aiofiles
import aiofiles.os

from fileshare.exceptions import StorageIOError
from fileshare.services.watcher import DirectoryWatcher, StorageListener, is_hidden

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^\w.\-() ]")
_STORAGE_PREFIX = re.compile(r"^\d+-[0-9a-f]{12}-(?P<name>.+)$")
_MAX_NAME_LENGTH = 200
_SAVE_ATTEMPTS = 5


@dataclass(frozen=True)
class StoredBlob:
    filename: str
    birth_time: datetime
    size_bytes: int


class BlobStorage(Protocol):
    """Capability the coordinator and retention scheduler need from storage."""

    async def save(self, desired_name: str, data: bytes) -> str: ...

    async def read_path(self, filename: str) -> Optional[Path]: ...

    async def delete(self, filename: str) -> None: ...

    async def list(self) -> List[StoredBlob]: ...

    async def stat(self, filename: str) -> Optional[StoredBlob]: ...

    def subscribe(self, listener: StorageListener) -> None: ...

    async def start(self) -> None: ...

    async def close(self) -> None: ...


def sanitize_filename(name: str) -> str:
    """Strip directories and unsafe characters from a client-supplied name."""
    base = Path(name.replace("\\", "/")).name.strip()
    base = _UNSAFE_CHARS.sub("_", base)[:_MAX_NAME_LENGTH]
    return base or "unnamed"


def build_storage_name(desired_name: str) -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}-{sanitize_filename(desired_name)}"


def display_name_from_filename(filename: str) -> str:
    """Recover the original name from a stored name; foreign names pass through."""
    match = _STORAGE_PREFIX.match(filename)
    return match.group("name") if match else filename


def _birth_time(st) -> datetime:
    # st_birthtime exists on macOS/BSD/Windows; Linux falls back to the older of ctime/mtime
    timestamp = getattr(st, "st_birthtime", None)
    if timestamp is None:
        timestamp = min(st.st_ctime, st.st_mtime)
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class LocalFileStorage:
    """Handles blob read/write in the upload directory and owns its watcher."""

    def __init__(self, upload_dir: str | Path, stability_seconds: float = 0.5, poll_seconds: float = 0.1):
        self.base_path = Path(upload_dir).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._watcher = DirectoryWatcher(
            self.base_path,
            stability_seconds=stability_seconds,
            poll_seconds=poll_seconds,
        )

    def _resolve(self, filename: str) -> Optional[Path]:
        """Map a filename to a path inside base_path, rejecting traversal and hidden names."""
        if (
            not filename
            or filename in (".", "..")
            or "/" in filename
            or "\\" in filename
            or "\x00" in filename
            or is_hidden(filename)
        ):
            return None
        return self.base_path / filename

    async def _discard(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove temp file {path}: {e}")

    async def save(self, desired_name: str, data: bytes) -> str:
        """Write bytes under a fresh unique name. Returns the assigned filename."""
        for _ in range(_SAVE_ATTEMPTS):
            filename = build_storage_name(desired_name)
            final_path = self.base_path / filename
            temp_path = self.base_path / f".{filename}.part"
            try:
                async with aiofiles.open(temp_path, "xb") as f:
                    await f.write(data)
            except FileExistsError:
                continue
            except OSError as e:
                await self._discard(temp_path)
                raise StorageIOError(f"Failed to write {desired_name}: {e}") from e

            if await aiofiles.os.path.exists(final_path):
                await self._discard(temp_path)
                continue
            self._watcher.expect(filename)
            try:
                await aiofiles.os.replace(temp_path, final_path)
            except OSError as e:
                self._watcher.unexpect(filename)
                await self._discard(temp_path)
                raise StorageIOError(f"Failed to store {desired_name}: {e}") from e

            logger.info(f"Saved {filename} ({len(data)} bytes)")
            return filename

        raise StorageIOError(f"Could not allocate a unique name for {desired_name}")

    async def read_path(self, filename: str) -> Optional[Path]:
        path = self._resolve(filename)
        if path is None or not await aiofiles.os.path.isfile(path):
            return None
        return path

    async def delete(self, filename: str) -> None:
        """Delete a blob. Missing files are treated as already deleted."""
        path = self._resolve(filename)
        if path is None:
            return
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageIOError(f"Failed to delete {filename}: {e}") from e
        logger.info(f"Deleted blob {filename}")

    async def stat(self, filename: str) -> Optional[StoredBlob]:
        path = self._resolve(filename)
        if path is None:
            return None
        try:
            st = await aiofiles.os.stat(path)
        except FileNotFoundError:
            return None
        if not stat_mode.S_ISREG(st.st_mode):
            return None
        return StoredBlob(filename=filename, birth_time=_birth_time(st), size_bytes=st.st_size)

    async def list(self) -> List[StoredBlob]:
        blobs = []
        for name in sorted(await aiofiles.os.listdir(self.base_path)):
            if is_hidden(name):
                continue
            blob = await self.stat(name)
            if blob is not None:
                blobs.append(blob)
        return blobs

    def subscribe(self, listener: StorageListener) -> None:
        self._watcher.add_listener(listener)

    async def start(self) -> None:
        await self._watcher.start()

    async def close(self) -> None:
        await self._watcher.close()
