"""Local staging area for uploaded files awaiting cloud transfer."""

from pathlib import Path
from typing import Union

import structlog

logger = structlog.get_logger(__name__)


class LocalFileStore:
    """Files live under one root directory, addressed by their stored name."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def path_for(self, filename: str) -> Path:
        path = (self.root / filename).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Stored file name escapes the storage root: {filename}")
        return path

    def exists(self, filename: str) -> bool:
        return self.path_for(filename).is_file()

    def write(self, filename: str, content: bytes) -> Path:
        path = self.path_for(filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    def delete(self, filename: str) -> bool:
        path = self.path_for(filename)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Local file deleted", filename=filename)
        return True
