"""Per-request scratch areas on the local filesystem."""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from types import TracebackType

from ..log_utils import get_logger
from .errors import ResourceError

LOGGER = get_logger("pdf_image_service.scratch")


class ScratchArea:
    """A uniquely named working directory owned by exactly one request.

    Use as a context manager; the directory and every adopted file are
    removed on exit, whatever the exit path.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._adopted: list[Path] = []
        self._released = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def released(self) -> bool:
        return self._released

    def child(self, name: str) -> Path:
        if self._released:
            raise ResourceError(f"scratch area {self._path} was already released")
        return self._path / Path(name).name

    def adopt(self, path: Path) -> Path:
        """Track a file staged outside the area so it is released with it."""
        self._adopted.append(Path(path))
        return Path(path)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        errors: list[str] = []
        for staged in self._adopted:
            try:
                staged.unlink(missing_ok=True)
            except OSError as exc:
                errors.append(f"{staged}: {exc}")
        try:
            shutil.rmtree(self._path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            errors.append(f"{self._path}: {exc}")
        if errors:
            raise ResourceError("failed to clean up scratch area: " + "; ".join(errors))
        LOGGER.debug("Released scratch area %s", self._path)

    def __enter__(self) -> "ScratchArea":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            self.release()
        except ResourceError as cleanup_error:
            if exc is None:
                LOGGER.error("%s", cleanup_error)
                raise
            # keep the original failure; the cleanup one is only logged
            LOGGER.error("%s (while handling %s)", cleanup_error, exc_type.__name__ if exc_type else "error")


class ScratchSpace:
    def __init__(self, base_dir: str | Path | None = None, prefix: str = "conversion_") -> None:
        self._base = Path(base_dir) if base_dir else Path(tempfile.gettempdir())
        self._prefix = prefix

    @property
    def base_dir(self) -> Path:
        return self._base

    def acquire(self) -> ScratchArea:
        try:
            self._base.mkdir(parents=True, exist_ok=True)
            path = Path(tempfile.mkdtemp(prefix=self._prefix, dir=self._base))
        except OSError as exc:
            LOGGER.error("Could not create scratch area under %s: %s", self._base, exc)
            raise ResourceError(f"could not create scratch area: {exc}") from exc
        LOGGER.debug("Acquired scratch area %s", path)
        return ScratchArea(path)
