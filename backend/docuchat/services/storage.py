"""Local filesystem object storage for original uploaded files."""
import asyncio
import uuid
from dataclasses import dataclass
from pathlib import Path

from docuchat.exceptions import StorageError
from docuchat.utils.logger import logger


@dataclass(frozen=True)
class StoredObject:
    """Location of an uploaded object."""

    url: str
    public_id: str


class LocalObjectStorage:
    """Stores uploaded files under a root directory, addressed by ``file://`` URLs."""

    def __init__(self, root_dir: str = "./uploads"):
        self.root_dir = Path(root_dir).resolve()
        self.root_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, public_id: str) -> Path:
        path = (self.root_dir / public_id).resolve()
        if self.root_dir not in path.parents:
            raise StorageError(f"Invalid object id: {public_id}")
        return path

    async def upload(self, content: bytes, filename: str) -> StoredObject:
        """Persist file bytes and return their URL and public id."""
        public_id = f"{uuid.uuid4().hex}{Path(filename).suffix.lower()}"
        path = self._path_for(public_id)
        try:
            await asyncio.to_thread(path.write_bytes, content)
        except OSError as e:
            raise StorageError(f"Failed to store file: {str(e)}")

        logger.debug(f"Stored {len(content)} bytes as {public_id}")
        return StoredObject(url=path.as_uri(), public_id=public_id)

    async def fetch(self, url: str) -> bytes:
        """Read an object back by its URL."""
        if not url.startswith("file://"):
            raise StorageError(f"Unsupported storage URL: {url}")

        path = self._path_for(Path(url[len("file://"):]).name)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise StorageError(f"Stored file not found: {path.name}")
        except OSError as e:
            raise StorageError(f"Failed to read stored file: {str(e)}")

    async def delete(self, public_id: str) -> None:
        """Delete an object; deleting a missing object is not an error."""
        path = self._path_for(public_id)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            raise StorageError(f"Failed to delete stored file: {str(e)}")
