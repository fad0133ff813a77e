from __future__ import annotations
import base64
import logging
import time
import uuid
from pathlib import Path
from typing import List, Optional, Protocol

from .providers.types import sniff_image_mime

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
}


class BlobStore(Protocol):
    """Blocking `save`; the dispatcher calls it from a worker thread."""

    def save(self, data: bytes) -> str: ...


class DataUrlBlobStore:
    """Returns the image inline as a `data:` URL; nothing is written anywhere."""

    def save(self, data: bytes) -> str:
        mime = sniff_image_mime(data) or "image/png"
        return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


class LocalBlobStore:
    """Writes images under `root` and serves them as `<base_url>/<file>`.

    After every save, files older than `max_age_s` are deleted, then the oldest
    files beyond `max_count`. Either limit may be None to disable it.
    """

    def __init__(
        self,
        root: Path | str,
        base_url: str = "/generated",
        *,
        max_age_s: Optional[int] = None,
        max_count: Optional[int] = None,
    ) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        self.max_age_s = max_age_s
        self.max_count = max_count

    def save(self, data: bytes) -> str:
        ext = EXTENSIONS.get(sniff_image_mime(data) or "", "png")
        name = f"{uuid.uuid4().hex}.{ext}"
        (self.root / name).write_bytes(data)
        self.prune(keep=name)
        return f"{self.base_url}/{name}"

    def _files(self) -> List[Path]:
        files = [p for p in self.root.iterdir() if p.is_file() and p.suffix.lstrip(".") in EXTENSIONS.values()]
        return sorted(files, key=lambda p: p.stat().st_mtime)

    def prune(self, keep: str | None = None, now: float | None = None) -> int:
        """Apply the retention policy; returns the number of files removed."""
        now = time.time() if now is None else now
        removed = 0
        files = self._files()
        survivors: List[Path] = []
        for p in files:
            if p.name != keep and self.max_age_s is not None and now - p.stat().st_mtime > self.max_age_s:
                p.unlink(missing_ok=True)
                removed += 1
            else:
                survivors.append(p)
        if self.max_count is not None and len(survivors) > self.max_count:
            excess = len(survivors) - self.max_count
            for p in [s for s in survivors if s.name != keep][:excess]:
                p.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("blob store pruned %d file(s) from %s", removed, self.root)
        return removed
