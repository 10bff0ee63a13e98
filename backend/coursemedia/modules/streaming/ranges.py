"""HTTP Range header parsing for single byte ranges."""

import re
from typing import Optional

from coursemedia.core.exceptions import RangeNotSatisfiable, ValidationError
from coursemedia.core.storage import ByteRange

_RANGE_SPEC = re.compile(r"^(\d*)-(\d*)$")


def parse_range(header: Optional[str], size: int) -> Optional[ByteRange]:
    """Resolve a Range header against a resource size.

    Supports ``bytes=start-end``, ``bytes=start-`` and ``bytes=-suffix``.

    Args:
        header: Raw Range header, or None
        size: Resource size in bytes

    Returns:
        The inclusive range to serve, or None to serve the whole resource
        (no header, or a multi-range request)

    Raises:
        ValidationError: If the header is malformed
        RangeNotSatisfiable: If the range starts at or beyond the end
    """
    if header is None or not header.strip():
        return None

    unit, sep, spec = header.strip().partition("=")
    if not sep or unit.strip().lower() != "bytes":
        raise ValidationError("Malformed Range header")

    specs = [part.strip() for part in spec.split(",")]
    if len(specs) > 1:
        # Multipart responses are not produced; serve the full body.
        if all(_RANGE_SPEC.match(part) for part in specs):
            return None
        raise ValidationError("Malformed Range header")

    match = _RANGE_SPEC.match(specs[0])
    if match is None:
        raise ValidationError("Malformed Range header")

    first, last = match.groups()
    if not first and not last:
        raise ValidationError("Malformed Range header")

    if not first:
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(size)
        return ByteRange(max(0, size - suffix), size - 1)

    start = int(first)
    if last:
        end = int(last)
        if end < start:
            raise ValidationError("Malformed Range header")
    else:
        end = size - 1

    if start >= size:
        raise RangeNotSatisfiable(size)

    return ByteRange(start, min(end, size - 1))


def content_range(byte_range: ByteRange, size: int) -> str:
    return f"bytes {byte_range.start}-{byte_range.end}/{size}"
