"""Recipient normalization and the per-recipient allow-list."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

CONTACT_SUFFIX = "@c.us"
GROUP_SUFFIX = "@g.us"

_NON_DIGITS_RE = re.compile(r"\D")


class Capability(str, Enum):
    SEND = "send"
    READ = "read"
    DELETE = "delete"


def normalize_recipient(raw: str) -> str:
    """Return the canonical chat id for a phone number or already-qualified id.

    ``"+1 (555) 123-4567"`` becomes ``"15551234567@c.us"``; an id already ending in a
    known qualifier (``"123@c.us"``, ``"1203630@g.us"``) is returned unchanged. Any
    other input, including unknown qualifiers, is reduced to its digits.
    """
    if raw.endswith((CONTACT_SUFFIX, GROUP_SUFFIX)):
        return raw
    return f"{_NON_DIGITS_RE.sub('', raw)}{CONTACT_SUFFIX}"


def is_group_id(canonical_id: str) -> bool:
    return canonical_id.endswith(GROUP_SUFFIX)


@dataclass(slots=True, frozen=True)
class RecipientPermission:
    """One allow-list entry. Send/read default open, delete defaults closed."""

    id: str
    name: Optional[str] = None
    can_send: bool = True
    can_read: bool = True
    can_delete: bool = False

    @classmethod
    def from_config(cls, data: Mapping[str, Any]) -> "RecipientPermission":
        name = data.get("name")
        return cls(
            id=str(data["id"]),
            name=str(name) if name is not None else None,
            can_send=data.get("canSend") is not False,
            can_read=data.get("canRead") is not False,
            can_delete=data.get("canDelete") is True,
        )

    def allows(self, kind: Capability) -> bool:
        if kind is Capability.SEND:
            return self.can_send
        if kind is Capability.READ:
            return self.can_read
        return self.can_delete

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name or "Unknown",
            "canSend": self.can_send,
            "canRead": self.can_read,
            "canDelete": self.can_delete,
        }


class PermissionRegistry:
    """Read-only lookup of recipient capabilities keyed by canonical id.

    Anything not in the registry is denied every capability. The registry never
    changes after construction, so it is shared by concurrent tool calls without
    locking.
    """

    def __init__(self, records: Iterable[RecipientPermission] = ()):
        self._records: dict[str, RecipientPermission] = {}
        for record in records:
            if record.id in self._records:
                logger.warning("allowlist.duplicate_id", extra={"id": record.id})
                continue
            self._records[record.id] = record

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, canonical_id: object) -> bool:
        return canonical_id in self._records

    def get(self, canonical_id: str) -> Optional[RecipientPermission]:
        return self._records.get(canonical_id)

    def capability(self, canonical_id: str, kind: Capability | str) -> bool:
        record = self._records.get(canonical_id)
        if record is None:
            return False
        return record.allows(Capability(kind))

    def can_send(self, chat_id: str) -> bool:
        return self.capability(normalize_recipient(chat_id), Capability.SEND)

    def can_read(self, chat_id: str) -> bool:
        return self.capability(normalize_recipient(chat_id), Capability.READ)

    def can_delete(self, chat_id: str) -> bool:
        return self.capability(normalize_recipient(chat_id), Capability.DELETE)

    def capabilities_for(self, canonical_id: str) -> dict[str, bool]:
        """Capability flags for a chat, all False when it is not allow-listed."""
        return {
            "canSend": self.capability(canonical_id, Capability.SEND),
            "canRead": self.capability(canonical_id, Capability.READ),
            "canDelete": self.capability(canonical_id, Capability.DELETE),
        }

    def list_all(self) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self._records.values()]


@dataclass(slots=True, frozen=True)
class AllowlistConfig:
    """Result of loading the allow-list document."""

    registry: PermissionRegistry = field(default_factory=PermissionRegistry)
    path: Optional[str] = None
    suppress_warnings: bool = False
    load_error: Optional[str] = None

    @property
    def display_path(self) -> str:
        return self.path or "none"


def _parse_records(entries: Any) -> list[RecipientPermission]:
    if not isinstance(entries, list):
        raise ValueError("'allowed' must be a list of recipient objects")
    records: list[RecipientPermission] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, Mapping) or not isinstance(entry.get("id"), str) or not entry["id"]:
            logger.warning("allowlist.entry_skipped", extra={"index": index, "reason": "missing string 'id'"})
            continue
        records.append(RecipientPermission.from_config(entry))
    return records


def load_allowlist(path: str | Path | None) -> AllowlistConfig:
    """Load the allow-list JSON document; never raises.

    Any failure degrades to an empty registry (every capability denied) with the
    reason kept in ``load_error`` so ``list_chats`` stays usable for setup.
    """
    if path is None:
        logger.warning("No --config specified. Send/read are blocked, but list_chats works for setup.")
        return AllowlistConfig()

    resolved = Path(path).expanduser()
    display = str(path)
    if not resolved.exists():
        logger.error("Allow-list config not found: %s", display)
        return AllowlistConfig(path=display, load_error=f"Config not found: {display}")

    try:
        document = json.loads(resolved.read_text(encoding="utf-8"))
        if not isinstance(document, Mapping):
            raise ValueError("top-level JSON value must be an object")
        records = _parse_records(document.get("allowed") or [])
    except (OSError, ValueError) as exc:
        # json.JSONDecodeError is a ValueError
        logger.error("Failed to load allow-list config %s: %s", display, exc)
        return AllowlistConfig(path=display, load_error=str(exc))

    suppress_warnings = document.get("suppressWarnings") is True
    registry = PermissionRegistry(records)
    if len(registry) == 0 and not suppress_warnings:
        logger.warning("No allowed recipients configured. Use list_chats to find chat IDs, then add them to %s", display)
    else:
        logger.info("Loaded %d allowed recipients from %s", len(registry), display)
    return AllowlistConfig(registry=registry, path=display, suppress_warnings=suppress_warnings)
