from __future__ import annotations

import json

import pytest

from zappy_mcp.permissions import (
    Capability,
    PermissionRegistry,
    RecipientPermission,
    is_group_id,
    load_allowlist,
    normalize_recipient,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("+1 (555) 123-4567", "15551234567@c.us"),
        ("5511999999999", "5511999999999@c.us"),
        ("123@c.us", "123@c.us"),
        ("120363025@g.us", "120363025@g.us"),
        # Only the two canonical suffixes pass through untouched
        ("123@s.whatsapp.net", "123@c.us"),
        ("447700900123@lid", "447700900123@c.us"),
    ],
)
def test_normalize_recipient(raw, expected):
    assert normalize_recipient(raw) == expected


def test_normalize_recipient_is_idempotent():
    once = normalize_recipient("+44 20 7946 0958")
    assert normalize_recipient(once) == once


def test_is_group_id():
    assert is_group_id("120363025@g.us")
    assert not is_group_id("123@c.us")


def test_entry_defaults_open_send_read_and_closed_delete():
    entry = RecipientPermission.from_config({"id": "123@c.us"})
    assert entry.can_send is True
    assert entry.can_read is True
    assert entry.can_delete is False
    assert entry.to_dict()["name"] == "Unknown"


def test_entry_flags_need_explicit_values():
    # Only a literal false closes send/read; only a literal true opens delete
    entry = RecipientPermission.from_config(
        {"id": "123@c.us", "canSend": False, "canRead": 0, "canDelete": "yes"}
    )
    assert entry.can_send is False
    assert entry.can_read is True
    assert entry.can_delete is False


def test_registry_denies_unknown_ids():
    registry = PermissionRegistry([RecipientPermission(id="123@c.us", can_delete=True)])
    for kind in Capability:
        assert registry.capability("999@c.us", kind) is False
    assert registry.capabilities_for("999@c.us") == {"canSend": False, "canRead": False, "canDelete": False}
    assert registry.capabilities_for("123@c.us") == {"canSend": True, "canRead": True, "canDelete": True}


def test_registry_normalizes_phone_numbers():
    registry = PermissionRegistry([RecipientPermission(id="15551234567@c.us", can_read=False)])
    assert registry.can_send("+1 555 123 4567")
    assert not registry.can_read("15551234567")
    assert not registry.can_delete("15551234567@c.us")


def test_registry_first_duplicate_wins():
    registry = PermissionRegistry(
        [
            RecipientPermission(id="123@c.us", name="first", can_send=True),
            RecipientPermission(id="123@c.us", name="second", can_send=False),
        ]
    )
    assert len(registry) == 1
    assert registry.can_send("123@c.us")
    assert registry.list_all()[0]["name"] == "first"


def test_load_allowlist_parses_entries(write_allowlist):
    path = write_allowlist(
        [
            {"id": "123@c.us", "name": "Alice", "canDelete": True},
            {"id": "120363025@g.us", "name": "Family", "canSend": False},
            {"name": "no id"},
            "garbage",
        ]
    )
    config = load_allowlist(path)
    assert config.load_error is None
    assert len(config.registry) == 2
    assert config.registry.can_delete("123@c.us")
    assert not config.registry.can_send("120363025@g.us")
    assert config.registry.can_read("120363025@g.us")
    assert config.display_path == path


def test_load_allowlist_suppress_warnings(write_allowlist):
    config = load_allowlist(write_allowlist([], suppressWarnings=True))
    assert config.suppress_warnings is True
    assert len(config.registry) == 0


def test_load_allowlist_without_path():
    config = load_allowlist(None)
    assert len(config.registry) == 0
    assert config.load_error is None
    assert config.display_path == "none"


def test_load_allowlist_missing_file_degrades_to_empty(tmp_path):
    config = load_allowlist(tmp_path / "missing.json")
    assert len(config.registry) == 0
    assert config.load_error is not None
    assert "not found" in config.load_error


def test_load_allowlist_malformed_json_degrades_to_empty(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    config = load_allowlist(path)
    assert len(config.registry) == 0
    assert config.load_error


def test_load_allowlist_rejects_non_list_allowed(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"allowed": {"id": "123@c.us"}}), encoding="utf-8")
    config = load_allowlist(path)
    assert len(config.registry) == 0
    assert "list" in (config.load_error or "")
