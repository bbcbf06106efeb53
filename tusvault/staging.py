import os
from pathlib import Path

from tusvault.config import settings

PART_SUFFIX = ".part"


class ChunkStore:
    """Append buffers for in-flight uploads, one ``<upload_id>.part`` file each."""

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def path(self, upload_id: str) -> Path:
        return self.root / f"{upload_id}{PART_SUFFIX}"

    def exists(self, upload_id: str) -> bool:
        return self.path(upload_id).is_file()

    def stat(self, upload_id: str) -> os.stat_result | None:
        try:
            return self.path(upload_id).stat()
        except FileNotFoundError:
            return None

    def open(self, upload_id: str):
        """Open the buffer for read/write, creating it when absent."""
        self.root.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path(upload_id), os.O_RDWR | os.O_CREAT, 0o640)
        return os.fdopen(fd, "r+b")

    def write_at(self, upload_id: str, offset: int, data: bytes) -> int:
        with self.open(upload_id) as handle:
            handle.seek(offset)
            written = handle.write(data)
            # bytes past the last accepted chunk belong to an earlier failed attempt
            handle.truncate()
            handle.flush()
            os.fsync(handle.fileno())
        return written

    def remove(self, upload_id: str) -> None:
        self.path(upload_id).unlink(missing_ok=True)

    def list_ids(self) -> list[str]:
        if not self.root.exists():
            return []
        return [path.name[: -len(PART_SUFFIX)] for path in self.root.glob(f"*{PART_SUFFIX}") if path.is_file()]


chunk_store = ChunkStore(settings.staging_dir)
