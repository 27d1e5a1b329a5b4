import base64
import json
import struct
import zlib
from datetime import datetime, timezone

import pytest

from backend.db import Character, Chat, Message, MessageRole, Persona
from backend.sillytavern import (
    CardFormatError,
    convert_multi_persona_backup,
    create_st_character_png,
    export_st_character,
    export_st_chat,
    export_st_persona,
    import_st_character,
    import_st_chat,
    import_st_persona,
    is_multi_persona_backup,
    parse_st_character_png,
)


def _chunk(chunk_type: bytes, data: bytes) -> bytes:
    crc = zlib.crc32(chunk_type + data) & 0xFFFFFFFF
    return struct.pack(">I", len(data)) + chunk_type + data + struct.pack(">I", crc)


def _tiny_png(*extra: bytes) -> bytes:
    ihdr = struct.pack(">IIBBBBB", 1, 1, 8, 2, 0, 0, 0)
    idat = zlib.compress(b"\x00\xff\x00\x00")
    return (
        b"\x89PNG\r\n\x1a\n"
        + _chunk(b"IHDR", ihdr)
        + b"".join(extra)
        + _chunk(b"IDAT", idat)
        + _chunk(b"IEND", b"")
    )


def _character(**values) -> Character:
    defaults = {
        "name": "Aria",
        "description": "A wandering bard.",
        "personality": "Cheerful",
        "scenario": "A tavern at dusk.",
        "first_message": "Well met!",
        "example_dialogues": "<START>",
        "system_prompt": "",
        "silly_tavern_data": None,
    }
    defaults.update(values)
    return Character(**defaults)


def test_import_card_v2() -> None:
    imported = import_st_character(
        {
            "spec": "chara_card_v2",
            "spec_version": "2.0",
            "data": {
                "name": "Aria",
                "description": "Bard",
                "first_mes": "Hello!",
                "mes_example": ["<START>", "{{char}}: hi"],
                "tags": ["fantasy"],
            },
        }
    )
    assert imported["name"] == "Aria"
    assert imported["first_message"] == "Hello!"
    assert json.loads(imported["example_dialogues"]) == ["<START>", "{{char}}: hi"]
    assert imported["silly_tavern_data"]["tags"] == ["fantasy"]


def test_import_requires_name() -> None:
    with pytest.raises(CardFormatError):
        import_st_character({"description": "nameless"})


def test_export_overrides_stored_card_with_current_values() -> None:
    character = _character(silly_tavern_data={"name": "Old", "tags": ["kept"], "creator": "me"})
    card = export_st_character(character)
    assert card["spec"] == "chara_card_v2"
    assert card["spec_version"] == "2.0"
    assert card["data"]["name"] == "Aria"
    assert card["data"]["tags"] == ["kept"]
    assert card["data"]["first_mes"] == "Well met!"


def test_png_card_roundtrip_keeps_image_chunks() -> None:
    avatar = _tiny_png()
    exported = create_st_character_png(_character(), avatar)

    card = parse_st_character_png(exported)
    assert card["name"] == "Aria"
    assert exported.endswith(_chunk(b"IEND", b""))
    assert exported.index(b"tEXt") > exported.index(b"IHDR")


def test_png_replaces_existing_card_chunk() -> None:
    stale = base64.b64encode(json.dumps({"name": "Stale"}).encode())
    avatar = _tiny_png(_chunk(b"tEXt", b"chara\x00" + stale))
    exported = create_st_character_png(_character(name="Fresh"), avatar)
    assert exported.count(b"chara\x00") == 1
    assert parse_st_character_png(exported)["name"] == "Fresh"


def test_png_reads_raw_json_ccv2_chunk() -> None:
    payload = json.dumps({"spec": "chara_card_v2", "data": {"name": "Raw"}}).encode()
    assert parse_st_character_png(_tiny_png(_chunk(b"tEXt", b"ccv2\x00" + payload)))["name"] == "Raw"


def test_png_without_card_and_invalid_png() -> None:
    assert parse_st_character_png(_tiny_png()) is None
    with pytest.raises(CardFormatError):
        parse_st_character_png(b"GIF89a")
    with pytest.raises(CardFormatError):
        create_st_character_png(_character(), b"not a png")


def test_persona_import_export() -> None:
    imported = import_st_persona(
        {"name": "Sam", "description": "A traveller", "personality": "curious", "depth": 2}
    )
    assert imported["personality_traits"] == "curious"
    persona = Persona(
        name=imported["name"],
        title="Wanderer",
        description=imported["description"],
        personality_traits=imported["personality_traits"],
        silly_tavern_data=imported["silly_tavern_data"],
    )
    exported = export_st_persona(persona)
    assert exported["name"] == "Sam"
    assert exported["personality"] == "curious"
    assert exported["title"] == "Wanderer"
    assert exported["depth"] == 2


def test_multi_persona_backup_conversion() -> None:
    backup = {
        "personas": {"sam.png": "Sam", "kit.png": "Kit", "ghost.png": "Ghost"},
        "persona_descriptions": {
            "sam.png": {"description": "Traveller", "title": "Wanderer", "depth": 4, "role": 0},
            "kit.png": {"description": "Engineer", "lorebook": "kit-lore"},
        },
        "default_persona": "kit.png",
    }
    assert is_multi_persona_backup(backup) is True
    assert is_multi_persona_backup({"personas": []}) is False
    assert is_multi_persona_backup({"name": "Sam"}) is False

    converted = {entry["name"]: entry for entry in convert_multi_persona_backup(backup)}
    assert set(converted) == {"Sam", "Kit"}
    assert converted["Sam"]["title"] == "Wanderer"
    assert converted["Sam"]["depth"] == 4
    assert converted["Sam"]["is_default"] is False
    assert converted["Kit"]["is_default"] is True
    assert converted["Kit"]["lorebook"] == "kit-lore"


def test_chat_import_reads_jsonl_header_dates_and_swipes() -> None:
    lines = [
        {"user_name": "Sam", "character_name": "Aria", "chat_metadata": {"scenario": "Dusk"}},
        {"name": "Sam", "is_user": True, "send_date": 1700000000000, "mes": "Hello"},
        {
            "name": "Aria",
            "is_user": False,
            "send_date": "November 16th, 2025 7:45am",
            "mes": "Hi!",
            "swipes": ["Hi!", "Hey there!", "Greetings."],
            "swipe_id": 1,
        },
        {"name": "Aria", "is_user": False, "send_date": "2025-11-16T08:00:00Z", "mes": "Well?"},
    ]

    imported = import_st_chat(lines)

    assert imported["metadata"] == {"scenario": "Dusk"}
    assert imported["character_name"] == "Aria"
    assert imported["user_name"] == "Sam"
    messages = imported["messages"]
    assert [(m["role"], m["content"], m["swipe_index"]) for m in messages] == [
        (MessageRole.USER, "Hello", 0),
        (MessageRole.ASSISTANT, "Hi!", 0),
        (MessageRole.ASSISTANT, "Hey there!", 1),
        (MessageRole.ASSISTANT, "Greetings.", 2),
        (MessageRole.ASSISTANT, "Well?", 0),
    ]
    assert messages[0]["created_at"] == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    assert messages[1]["created_at"] == datetime(2025, 11, 16, 7, 45, tzinfo=timezone.utc)
    assert messages[4]["created_at"] == datetime(2025, 11, 16, 8, 0, tzinfo=timezone.utc)
    assert {m["swipe_group_id"] for m in messages[1:4]} == {"swipe-1"}
    assert messages[0]["swipe_group_id"] is None


def test_chat_import_rejects_payload_without_messages() -> None:
    with pytest.raises(CardFormatError):
        import_st_chat({"chat_metadata": {}})
    with pytest.raises(CardFormatError):
        import_st_chat([{"name": "Sam", "mes": 3}])


def test_chat_export_groups_swipes_and_skips_system_messages() -> None:
    sent = datetime(2025, 11, 16, 7, 45, tzinfo=timezone.utc)
    chat = Chat(title="Night", silly_tavern_metadata={"scenario": "Dusk"}, created_at=sent)
    messages = [
        Message(seq=1, role=MessageRole.SYSTEM, content="hidden", swipe_index=0, created_at=sent),
        Message(seq=2, role=MessageRole.USER, content="Hello", swipe_index=0, created_at=sent),
        Message(
            seq=3,
            role=MessageRole.ASSISTANT,
            content="Hey there!",
            swipe_group_id="g1",
            swipe_index=1,
            created_at=sent,
        ),
        Message(
            seq=4,
            role=MessageRole.ASSISTANT,
            content="Hi!",
            swipe_group_id="g1",
            swipe_index=0,
            raw_response={"api": "openai"},
            created_at=sent,
        ),
    ]

    exported = export_st_chat(chat, messages, "Aria", "Sam")

    assert exported["chat_metadata"] == {"scenario": "Dusk"}
    assert exported["create_date"] == int(sent.timestamp() * 1000)
    assert [entry["name"] for entry in exported["messages"]] == ["Sam", "Aria"]
    reply = exported["messages"][1]
    assert reply["mes"] == "Hi!"
    assert reply["swipes"] == ["Hi!", "Hey there!"]
    assert reply["swipe_id"] == 0
    assert "swipes" not in exported["messages"][0]
