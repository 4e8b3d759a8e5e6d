from __future__ import annotations

from typing import Dict, Optional, Tuple

from studio_jobs.domain.enums import AspectRatio

DEFAULT_DIMENSIONS: Tuple[int, int] = (1024, 1024)

ASPECT_RATIO_DIMENSIONS: Dict[str, Tuple[int, int]] = {
    AspectRatio.ar_1_1.value: (1024, 1024),
    AspectRatio.ar_4_3.value: (1024, 768),
    AspectRatio.ar_3_4.value: (768, 1024),
    AspectRatio.ar_16_9.value: (1024, 576),
    AspectRatio.ar_9_16.value: (576, 1024),
}

# (signature, content_type, extension); checked in order
_IMAGE_SIGNATURES = (
    (b"\x89PNG", "image/png", "png"),
    (b"\xff\xd8\xff", "image/jpeg", "jpg"),
    (b"GIF", "image/gif", "gif"),
)

_EXT_FOR_CONTENT_TYPE = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
}


def dimensions_for(aspect_ratio: Optional[str]) -> Tuple[int, int]:
    key = getattr(aspect_ratio, "value", aspect_ratio)
    return ASPECT_RATIO_DIMENSIONS.get(str(key or ""), DEFAULT_DIMENSIONS)


def sniff_image_type(data: bytes) -> Tuple[str, str]:
    """
    Classify image bytes by their leading magic number.

    Returns (content_type, extension). Unknown signatures are treated as PNG.
    """
    head = bytes(data[:8])
    for signature, content_type, ext in _IMAGE_SIGNATURES:
        if head.startswith(signature):
            return content_type, ext
    return "image/png", "png"


def is_known_image(data: bytes) -> bool:
    head = bytes(data[:8])
    return any(head.startswith(sig) for sig, _, _ in _IMAGE_SIGNATURES)


def ext_for_content_type(content_type: Optional[str]) -> str:
    ct = (content_type or "").split(";")[0].strip().lower()
    return _EXT_FOR_CONTENT_TYPE.get(ct, "bin")
