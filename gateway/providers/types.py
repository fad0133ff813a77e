from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

TEXT = "text"
IMAGE = "image"

Payload = Union[str, bytes]


@dataclass(frozen=True)
class ProviderRequest:
    prompt: str
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderResponse:
    ok: bool
    content: Payload
    latency_ms: int
    provider_meta: Dict[str, Any]
    error: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def failure(cls, error: str, latency_ms: int = 0, meta: Dict[str, Any] | None = None) -> "ProviderResponse":
        return cls(False, "", latency_ms, meta or {}, error=error)


_IMAGE_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


def sniff_image_mime(data: bytes) -> Optional[str]:
    """Return the MIME type for recognised image bytes, else None."""
    for sig, mime in _IMAGE_SIGNATURES:
        if data.startswith(sig):
            return mime
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None
