"""
Key/value metadata carried inside a free-text event description.

Some calendar backends drop custom properties, so gateways may append a
``Metadata: key:value;key:value`` line to the description and parse it back
on read. Only gateways use these helpers; the reconciler always works with
structured metadata dicts.
"""

import hashlib
import re
from datetime import datetime
from datetime import timezone

from assignment_sync.models import CalendarEvent

METADATA_LABEL = "Metadata: "

_METADATA_LINE_RE = re.compile(r"^Metadata: (.+)$", re.MULTILINE)
_TRAILING_BLOCK_RE = re.compile(r"\n*^Metadata: .+$\n?", re.MULTILINE)


def encode_metadata(metadata: dict[str, str]) -> str:
    """Serialise metadata to a single ``Metadata:`` line (empty for no metadata)."""
    if not metadata:
        return ""
    pairs = ";".join(f"{key}:{value}" for key, value in metadata.items())
    return f"{METADATA_LABEL}{pairs}"


def append_metadata(description: str | None, metadata: dict[str, str]) -> str:
    """Return ``description`` with the metadata line appended after a blank line."""
    base = strip_metadata(description or "")
    line = encode_metadata(metadata)
    if not line:
        return base
    if not base:
        return line
    return f"{base}\n\n{line}"


def extract_metadata(description: str | None) -> dict[str, str]:
    """Parse the last ``Metadata:`` line of a description into a dict."""
    if not description:
        return {}
    matches = _METADATA_LINE_RE.findall(description)
    if not matches:
        return {}

    metadata: dict[str, str] = {}
    for pair in matches[-1].split(";"):
        key, sep, value = pair.partition(":")
        if sep and key.strip():
            metadata[key.strip()] = value.strip()
    return metadata


def strip_metadata(description: str | None) -> str:
    """Remove any ``Metadata:`` line (and the blank lines before it)."""
    if not description:
        return ""
    return _TRAILING_BLOCK_RE.sub("", description).rstrip("\n")


def matches_metadata(event: CalendarEvent, query: dict[str, str]) -> bool:
    """True when every key/value in ``query`` is present on the event."""
    return all(event.metadata.get(key) == value for key, value in query.items())


def _instant(value: datetime) -> str:
    if value.tzinfo is None:
        return value.isoformat()
    return value.astimezone(timezone.utc).isoformat()


def compute_event_hash(event: CalendarEvent) -> str:
    """
    SHA256 fingerprint of the user-visible event content for change detection.

    Server-assigned ids and the metadata block are excluded so that an event
    read back from a gateway hashes the same as the payload that created it.
    """
    parts = [
        event.title,
        strip_metadata(event.description),
        _instant(event.start_time),
        _instant(event.end_time),
        "1" if event.is_all_day else "0",
    ]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()
