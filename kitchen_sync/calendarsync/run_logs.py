import os
from pathlib import Path
from typing import Optional, Union

from kitchen_sync.config import config


class RunLogPathError(ValueError):
    pass


class RunLogStore:
    """Plain-text run logs stored as ``{base}/{job_id}/{run_id}.log``."""

    def __init__(self, base_directory: Optional[Union[str, Path]] = None):
        self.base_directory = Path(base_directory or config.CALENDARSYNC_LOG_DIR)

    def _resolve(self, location: str) -> Path:
        root = self.base_directory.resolve()
        absolute = (root / location).resolve()
        if absolute == root or not absolute.is_relative_to(root):
            raise RunLogPathError("Resolved log path escapes the configured log directory.")
        return absolute

    @staticmethod
    def location_for(job_id: str, run_id: str) -> str:
        return os.path.join(str(job_id), f"{run_id}.log")

    def write(self, job_id: str, run_id: str, content: str) -> str:
        """Returns the location relative to the store root."""
        location = self.location_for(job_id, run_id)
        absolute = self._resolve(location)
        absolute.parent.mkdir(parents=True, exist_ok=True)
        absolute.write_text(content, encoding="utf-8")
        return location

    def read(self, location: str) -> str:
        return self._resolve(location).read_text(encoding="utf-8")

    def read_for(self, job_id: str, run_id: str) -> str:
        return self.read(self.location_for(job_id, run_id))
