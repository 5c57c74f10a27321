"""MIME detection for uploaded media.

Sniffs with `magic` (python-magic) when libmagic is present, otherwise
trusts the declared content type. Some browsers send `image/jpg` and
libmagic reports `video/quicktime` for .mov, so both sides are normalised
before comparing against the allow lists.
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "video/mov": "video/quicktime",
}


def normalise(mime: Optional[str]) -> str:
    mime = (mime or "").split(";", 1)[0].strip().lower()
    return _ALIASES.get(mime, mime)


def sniff_mime(data: bytes, fallback_content_type: Optional[str] = None) -> str:
    try:
        import magic  # type: ignore

        try:
            detected = magic.Magic(mime=True).from_buffer(data[:8192])
        except Exception:
            detected = magic.from_buffer(data[:8192], mime=True)  # type: ignore
        # libmagic cannot type every container (heic, some webm); keep the client's claim then
        if isinstance(detected, str) and detected and detected != "application/octet-stream":
            return normalise(detected)
    except Exception:
        pass
    return normalise(fallback_content_type) or "application/octet-stream"


def is_allowed_mime(
    data: bytes,
    allowed: Iterable[str],
    fallback_content_type: Optional[str] = None,
) -> Tuple[bool, str]:
    """Return (allowed, mime) using sniffed MIME with fallback."""
    mime = sniff_mime(data, fallback_content_type)
    allowed_set = {normalise(a) for a in allowed}
    return mime in allowed_set, mime
