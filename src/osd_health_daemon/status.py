"""
Decoders for the JSON documents returned by the Ceph CLI.

Three shapes are understood:

    osd dump
        {"osds": [{"osd": 0, "up": 1, "in": 1, ...}, ...], ...}

    osd safe-to-destroy <id>
        {"safe_to_destroy": [0], "active": [], "missing_stats": [], "stored_pgs": []}

    osd crush class ls
        ["hdd", "ssd"]

Object keys are matched case-insensitively, so the capitalised variant
({"OSDs": [{"OSD": 0, "Up": 0, "In": 0}]}) decodes the same way. Unknown keys
are ignored. A missing required key or a value of the wrong type is a
ParseError; nothing is silently defaulted.

The 0/1 membership flags Ceph reports are turned into booleans here and never
leave this module as integers.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple, Union

from .errors import ParseError

_MISSING = object()


@dataclass(frozen=True)
class OSDStatus:
    """One OSD entry from `ceph osd dump`."""
    osd_id: int
    up: bool
    is_in: bool

    @property
    def down_and_out(self) -> bool:
        return not self.up and not self.is_in


@dataclass(frozen=True)
class SafeToDestroyReport:
    """Result of `ceph osd safe-to-destroy`, partitioned by outcome."""
    safe_to_destroy: Tuple[int, ...] = ()
    active: Tuple[int, ...] = ()
    missing_stats: Tuple[int, ...] = ()
    stored_pgs: Tuple[int, ...] = ()

    def is_safe(self, osd_id: int) -> bool:
        return osd_id in self.safe_to_destroy


def _load(raw: Union[str, bytes], what: str) -> Any:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not raw or not raw.strip():
        raise ParseError(f"empty {what} output")
    try:
        return json.loads(raw)
    except ValueError as e:
        raise ParseError(f"failed to decode {what} output: {e}") from e


def _lookup(obj: Dict[str, Any], key: str, default: Any = _MISSING) -> Any:
    """Case-insensitive key lookup; exact match wins."""
    if key in obj:
        return obj[key]
    lowered = key.lower()
    for k, v in obj.items():
        if isinstance(k, str) and k.lower() == lowered:
            return v
    if default is _MISSING:
        raise ParseError(f"missing required field {key!r}")
    return default


def _as_int(value: Any, field: str) -> int:
    # bool is a subclass of int, but true/false is not an OSD id
    if isinstance(value, bool) or not isinstance(value, int):
        raise ParseError(f"field {field!r} must be an integer, got {value!r}")
    return value


def _as_flag(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return value == 1
    raise ParseError(f"field {field!r} must be 0 or 1, got {value!r}")


def _as_id_list(value: Any, field: str) -> Tuple[int, ...]:
    if not isinstance(value, list):
        raise ParseError(f"field {field!r} must be a list, got {type(value).__name__}")
    return tuple(_as_int(v, field) for v in value)


def parse_osd_dump(raw: Union[str, bytes]) -> List[OSDStatus]:
    """
    Decode `ceph osd dump` output into OSDStatus records, in reported order.

    Raises:
        ParseError: on malformed JSON or a shape mismatch.
    """
    doc = _load(raw, "osd dump")
    if not isinstance(doc, dict):
        raise ParseError(f"osd dump must be a JSON object, got {type(doc).__name__}")

    entries = _lookup(doc, "osds")
    if not isinstance(entries, list):
        raise ParseError("field 'osds' must be a list")

    statuses = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ParseError(f"osd entry must be an object, got {entry!r}")
        statuses.append(OSDStatus(
            osd_id=_as_int(_lookup(entry, "osd"), "osd"),
            up=_as_flag(_lookup(entry, "up"), "up"),
            is_in=_as_flag(_lookup(entry, "in"), "in"),
        ))
    return statuses


def parse_safe_to_destroy(raw: Union[str, bytes]) -> SafeToDestroyReport:
    """
    Decode `ceph osd safe-to-destroy` output.

    `safe_to_destroy` is required. The other three lists are informational and
    may be absent, but must be integer lists when present.
    """
    doc = _load(raw, "safe-to-destroy")
    if not isinstance(doc, dict):
        raise ParseError(f"safe-to-destroy output must be a JSON object, got {type(doc).__name__}")

    return SafeToDestroyReport(
        safe_to_destroy=_as_id_list(_lookup(doc, "safe_to_destroy"), "safe_to_destroy"),
        active=_as_id_list(_lookup(doc, "active", []), "active"),
        missing_stats=_as_id_list(_lookup(doc, "missing_stats", []), "missing_stats"),
        stored_pgs=_as_id_list(_lookup(doc, "stored_pgs", []), "stored_pgs"),
    )


def parse_device_classes(raw: Union[str, bytes]) -> List[str]:
    """Decode `ceph osd crush class ls` output, preserving order."""
    doc = _load(raw, "crush class ls")
    if not isinstance(doc, list):
        raise ParseError(f"device class list must be a JSON array, got {type(doc).__name__}")
    for item in doc:
        if not isinstance(item, str):
            raise ParseError(f"device class names must be strings, got {item!r}")
    return list(doc)
