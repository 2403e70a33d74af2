import os
import uuid
from pathlib import Path
from typing import List, Optional

import aiofiles
import aiofiles.os

from file_drop import config
from file_drop.app.models.stored_file import FileInfo
from file_drop.logger_config import setup_logger

logger = setup_logger()


class InvalidFilenameError(ValueError):
    """Raised when a filename does not name a plain entry of the storage directory."""


class StorageManager:
    """Flat directory of uploaded files.

    The directory is the only record: a file's name is its key and its
    modification time is its upload time. Nothing here locks, so uploads,
    downloads, listings and the retention sweeper can race on the same name.
    """

    def __init__(
        self,
        upload_dir: Path,
        temp_dir: Optional[Path] = None,
        expiry_seconds: Optional[int] = None,
    ):
        self.upload_dir = Path(upload_dir)
        self.temp_dir = Path(temp_dir if temp_dir is not None else config.TEMP_DIR)
        self.expiry_seconds = expiry_seconds if expiry_seconds is not None else config.FILE_EXPIRY_SECONDS

    async def initialize(self):
        """Create the storage directories and clear leftover partial uploads."""
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Storage directory ready: {self.upload_dir}")

        files_removed = 0
        for file in self.temp_dir.glob("*.part"):
            if file.is_file():
                await aiofiles.os.unlink(file)
                files_removed += 1
        if files_removed:
            logger.info(f"Cleaned temporary directory, removed {files_removed} partial uploads")

    @staticmethod
    def safe_name(filename: Optional[str]) -> str:
        """Reduce a client supplied filename to its last path component."""
        if not filename:
            return ""
        # Some browsers send the full client path with backslashes
        return Path(filename.replace("\\", "/")).name

    def resolve(self, filename: str) -> Path:
        """Map a filename to its path inside the storage directory."""
        if not filename or filename in (".", "..") or "\x00" in filename:
            raise InvalidFilenameError(f"Invalid filename: {filename!r}")
        if "/" in filename or "\\" in filename or os.sep in filename:
            raise InvalidFilenameError(f"Invalid filename: {filename!r}")
        return self.upload_dir / filename

    def temp_path(self) -> Path:
        """A fresh path in the temporary directory for an upload in progress."""
        return self.temp_dir / f"{uuid.uuid4().hex}.part"

    async def commit(self, temp_path: Path, filename: str) -> Path:
        """Move a finished upload into place, replacing any file of the same name."""
        target = self.resolve(filename)
        await aiofiles.os.replace(temp_path, target)
        return target

    async def discard(self, temp_path: Path) -> None:
        try:
            await aiofiles.os.remove(temp_path)
        except FileNotFoundError:
            pass

    async def list_names(self) -> List[str]:
        """Names of every entry in the storage directory, unsorted."""
        return await aiofiles.os.listdir(self.upload_dir)

    async def get_mtime_ms(self, filename: str) -> int:
        stat = await aiofiles.os.stat(self.resolve(filename))
        return stat.st_mtime_ns // 1_000_000

    async def file_info(self, filename: str) -> FileInfo:
        upload_time = await self.get_mtime_ms(filename)
        return FileInfo(
            name=filename,
            uploadTime=upload_time,
            expiryTime=upload_time + self.expiry_seconds * 1000,
        )

    async def list_files(self) -> List[FileInfo]:
        """Describe every stored file.

        A directory read failure propagates as OSError. Entries that can't
        be stat'ed (for instance deleted since the directory was read) are
        left out.
        """
        files = []
        for name in await self.list_names():
            try:
                files.append(await self.file_info(name))
            except (OSError, InvalidFilenameError):
                continue
        return files

    async def exists(self, filename: str) -> bool:
        try:
            path = self.resolve(filename)
        except InvalidFilenameError:
            return False
        return await aiofiles.os.path.isfile(path)

    async def get_size(self, filename: str) -> int:
        stat = await aiofiles.os.stat(self.resolve(filename))
        return stat.st_size

    async def delete(self, filename: str) -> bool:
        """Delete a stored file. Returns False if it was already gone."""
        try:
            await aiofiles.os.remove(self.resolve(filename))
        except FileNotFoundError:
            return False
        return True
