import os
from pathlib import Path
from typing import BinaryIO

from resumable_uploads.config import settings

COPY_BLOCK_SIZE = 1024 * 1024


class ByteStore:
    """One append/seek-capable file per upload id."""

    def size(self, upload_id: str) -> int | None:
        raise NotImplementedError

    def write_at(self, upload_id: str, offset: int, source: BinaryIO) -> int:
        raise NotImplementedError

    def truncate(self, upload_id: str, size: int) -> None:
        raise NotImplementedError

    def delete(self, upload_id: str) -> bool:
        raise NotImplementedError

    def list_ids(self) -> list[str]:
        raise NotImplementedError


class LocalByteStore(ByteStore):
    def __init__(self, root: str, block_size: int = COPY_BLOCK_SIZE) -> None:
        self.root = Path(root)
        self.block_size = block_size
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, upload_id: str) -> Path:
        return self.root / upload_id

    def size(self, upload_id: str) -> int | None:
        try:
            return self.path_for(upload_id).stat().st_size
        except FileNotFoundError:
            return None

    def write_at(self, upload_id: str, offset: int, source: BinaryIO) -> int:
        """Copy ``source`` into the upload's file starting at ``offset``.

        Offset 0 recreates the file; any other offset writes in place. If the copy
        fails the file is cut back to ``offset`` before the error propagates.
        """
        path = self.path_for(upload_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        mode = "wb" if offset == 0 else "r+b"
        written = 0
        try:
            with path.open(mode) as target:
                target.seek(offset)
                while True:
                    block = source.read(self.block_size)
                    if not block:
                        break
                    target.write(block)
                    written += len(block)
                target.flush()
                os.fsync(target.fileno())
        except OSError:
            if path.exists():
                os.truncate(path, offset)
            raise
        return written

    def truncate(self, upload_id: str, size: int) -> None:
        path = self.path_for(upload_id)
        if path.exists():
            os.truncate(path, size)

    def delete(self, upload_id: str) -> bool:
        target = self.path_for(upload_id)
        if target.exists():
            target.unlink()
            return True
        return False

    def list_ids(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(path.name for path in self.root.iterdir() if path.is_file())


def build_storage() -> ByteStore:
    return LocalByteStore(settings.storage_root)


storage = build_storage()
