from __future__ import annotations

import base64
import binascii
import json
import re
import struct
import zlib
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from backend.config import APP_NAME, LOGGER
from backend.db import Character, Chat, Message, MessageRole, Persona

ST_LOGGER = LOGGER.getChild("sillytavern")

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
CARD_KEYWORDS = ("chara", "ccv2")
ST_DATE_FORMATS = ("%B %d, %Y %I:%M%p", "%B %d, %Y %I:%M %p", "%B %d, %Y")


class CardFormatError(ValueError):
    pass


def _card_data(payload: Dict[str, object]) -> Dict[str, object]:
    if payload.get("spec") == "chara_card_v2" and isinstance(payload.get("data"), dict):
        return payload["data"]
    if isinstance(payload.get("data"), dict) and "name" not in payload:
        return payload["data"]
    return payload


def import_st_character(payload: Dict[str, object]) -> Dict[str, object]:
    data = _card_data(payload)
    if not isinstance(data, dict) or not str(data.get("name") or "").strip():
        raise CardFormatError("Character card is missing a name.")
    example = data.get("mes_example") or ""
    if isinstance(example, list):
        example = json.dumps(example)
    return {
        "name": str(data["name"]).strip(),
        "title": data.get("title") or None,
        "description": data.get("description") or "",
        "personality": data.get("personality") or "",
        "scenario": data.get("scenario") or "",
        "first_message": data.get("first_mes") or "",
        "example_dialogues": example,
        "system_prompt": data.get("system_prompt") or "",
        "silly_tavern_data": data,
    }


def export_st_character(character: Character) -> Dict[str, object]:
    base = character.silly_tavern_data or {
        "creator_notes": "",
        "tags": [],
        "creator": APP_NAME,
        "character_version": "1.0",
        "extensions": {},
    }
    data = {
        **base,
        "name": character.name,
        "description": character.description or "",
        "personality": character.personality or "",
        "scenario": character.scenario or "",
        "first_mes": character.first_message or "",
        "mes_example": character.example_dialogues or "",
        "system_prompt": character.system_prompt or "",
    }
    if character.title:
        data["title"] = character.title
    else:
        data.pop("title", None)
    return {"spec": "chara_card_v2", "spec_version": "2.0", "data": data}


def _iter_chunks(buffer: bytes):
    offset = len(PNG_SIGNATURE)
    while offset + 8 <= len(buffer):
        (length,) = struct.unpack(">I", buffer[offset:offset + 4])
        chunk_type = buffer[offset + 4:offset + 8].decode("ascii", errors="replace")
        start = offset + 8
        end = start + length
        if end + 4 > len(buffer):
            raise CardFormatError("Truncated PNG chunk.")
        yield chunk_type, buffer[start:end], offset, end + 4
        if chunk_type == "IEND":
            return
        offset = end + 4


def _decode_card_text(text: bytes) -> Dict[str, object]:
    raw = text.decode("latin-1").strip()
    if not raw.startswith("{"):
        try:
            raw = base64.b64decode(raw, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise CardFormatError("Character chunk is not base64 or JSON.") from exc
    else:
        raw = text.decode("utf-8")
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise CardFormatError("Character chunk does not contain JSON.") from exc
    if not isinstance(parsed, dict):
        raise CardFormatError("Character chunk does not contain an object.")
    return parsed


def parse_st_character_png(buffer: bytes) -> Optional[Dict[str, object]]:
    if not buffer.startswith(PNG_SIGNATURE):
        raise CardFormatError("Invalid PNG file.")
    for chunk_type, data, _start, _end in _iter_chunks(buffer):
        if chunk_type != "tEXt":
            continue
        keyword, sep, text = data.partition(b"\x00")
        if not sep or keyword.decode("latin-1") not in CARD_KEYWORDS:
            continue
        parsed = _decode_card_text(text)
        if parsed.get("spec") == "chara_card_v2" and isinstance(parsed.get("data"), dict):
            return parsed["data"]
        if parsed.get("name"):
            return parsed
    return None


def _png_chunk(chunk_type: bytes, data: bytes) -> bytes:
    crc = zlib.crc32(chunk_type + data) & 0xFFFFFFFF
    return struct.pack(">I", len(data)) + chunk_type + data + struct.pack(">I", crc)


def create_st_character_png(character: Character, avatar: bytes) -> bytes:
    if not avatar or not avatar.startswith(PNG_SIGNATURE):
        raise CardFormatError("A PNG avatar is required for PNG export.")
    card = json.dumps(export_st_character(character), ensure_ascii=False)
    encoded = base64.b64encode(card.encode("utf-8"))
    text_chunk = _png_chunk(b"tEXt", b"chara\x00" + encoded)
    kept = [avatar[:len(PNG_SIGNATURE)]]
    inserted = False
    for chunk_type, data, start, end in _iter_chunks(avatar):
        if chunk_type == "tEXt" and data.partition(b"\x00")[0].decode("latin-1") in CARD_KEYWORDS:
            continue
        kept.append(avatar[start:end])
        if chunk_type == "IHDR" and not inserted:
            kept.append(text_chunk)
            inserted = True
    if not inserted:
        raise CardFormatError("PNG is missing an IHDR chunk.")
    return b"".join(kept)


def import_st_persona(payload: Dict[str, object]) -> Dict[str, object]:
    name = str(payload.get("name") or "").strip()
    if not name:
        raise CardFormatError("Persona is missing a name.")
    traits = payload.get("personality") or payload.get("personality_traits")
    return {
        "name": name,
        "title": payload.get("title") or None,
        "description": payload.get("description") or "",
        "personality_traits": traits or None,
        "silly_tavern_data": payload,
    }


def export_st_persona(persona: Persona) -> Dict[str, object]:
    data = {
        **(persona.silly_tavern_data or {}),
        "name": persona.name,
        "description": persona.description or "",
        "personality": persona.personality_traits or "",
    }
    if persona.title:
        data["title"] = persona.title
    return data


def is_multi_persona_backup(payload: object) -> bool:
    return (
        isinstance(payload, dict)
        and isinstance(payload.get("personas"), dict)
        and isinstance(payload.get("persona_descriptions"), dict)
    )


def convert_multi_persona_backup(backup: Dict[str, object]) -> List[Dict[str, object]]:
    personas = backup.get("personas") or {}
    descriptions = backup.get("persona_descriptions") or {}
    default_persona = backup.get("default_persona")
    converted: List[Dict[str, object]] = []
    for filename, name in personas.items():
        details = descriptions.get(filename)
        if not isinstance(details, dict):
            ST_LOGGER.debug("persona_backup_skip filename=%s reason=no_description", filename)
            continue
        entry: Dict[str, object] = {
            "filename": filename,
            "name": name,
            "description": details.get("description") or "",
            "title": details.get("title"),
            "is_default": filename == default_persona,
        }
        for key in ("position", "depth", "role", "lorebook", "connections"):
            if key in details:
                entry[key] = details[key]
        converted.append(entry)
    return converted


def _parse_send_date(value: object) -> datetime:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return datetime.now(timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return datetime.now(timezone.utc)
    text = value.strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is None:
        # "November 16th, 2025 7:45am"
        normalized = re.sub(r"(\d+)(?:st|nd|rd|th)\b", r"\1", text, count=1)
        normalized = re.sub(r"\s+", " ", normalized)
        for fmt in ST_DATE_FORMATS:
            try:
                parsed = datetime.strptime(normalized, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        ST_LOGGER.debug("chat_import_bad_date value=%s", text)
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _chat_entries(payload: object) -> Tuple[Dict[str, object], List[object]]:
    # JSONL exports arrive as a list whose first line is the chat header.
    if isinstance(payload, list):
        if payload and isinstance(payload[0], dict) and "mes" not in payload[0]:
            return payload[0], payload[1:]
        return {}, payload
    if isinstance(payload, dict) and isinstance(payload.get("messages"), list):
        return payload, payload["messages"]
    raise CardFormatError("Chat export has no messages.")


def import_st_chat(payload: object) -> Dict[str, object]:
    header, entries = _chat_entries(payload)
    messages: List[Dict[str, object]] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict) or not isinstance(entry.get("mes"), str):
            raise CardFormatError(f"Chat message {index} is missing its text.")
        role = MessageRole.USER if entry.get("is_user") else MessageRole.ASSISTANT
        created_at = _parse_send_date(entry.get("send_date"))
        extra = entry.get("extra") if isinstance(entry.get("extra"), dict) else None
        swipes = entry.get("swipes")
        if isinstance(swipes, list) and len(swipes) > 1:
            for swipe_index, swipe in enumerate(swipes):
                messages.append(
                    {
                        "role": role,
                        "content": str(swipe),
                        "created_at": created_at,
                        "swipe_group_id": f"swipe-{index}",
                        "swipe_index": swipe_index,
                        "raw_response": extra,
                    }
                )
            continue
        messages.append(
            {
                "role": role,
                "content": entry["mes"],
                "created_at": created_at,
                "swipe_group_id": None,
                "swipe_index": 0,
                "raw_response": extra,
            }
        )
    metadata = header.get("chat_metadata")
    return {
        "messages": messages,
        "metadata": metadata if isinstance(metadata, dict) else {},
        "character_name": header.get("character_name"),
        "user_name": header.get("user_name"),
    }


def _send_date(value: Optional[datetime]) -> int:
    if value is None:
        return 0
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def export_st_chat(
    chat: Chat,
    messages: Sequence[Message],
    character_name: str,
    user_name: str = "User",
) -> Dict[str, object]:
    visible = [m for m in messages if m.role in (MessageRole.USER, MessageRole.ASSISTANT)]
    groups: Dict[str, List[Message]] = {}
    for message in visible:
        if message.swipe_group_id:
            groups.setdefault(message.swipe_group_id, []).append(message)
    exported: List[Dict[str, object]] = []
    for message in visible:
        group = groups.get(message.swipe_group_id) if message.swipe_group_id else None
        if group is not None and group[0] is not message:
            continue
        entry: Dict[str, object] = {
            "name": user_name if message.role == MessageRole.USER else character_name,
            "is_user": message.role == MessageRole.USER,
            "is_name": True,
            "send_date": _send_date(message.created_at),
            "mes": message.content,
        }
        if group is not None:
            ordered = sorted(group, key=lambda m: m.swipe_index or 0)
            entry["mes"] = ordered[0].content
            entry["swipes"] = [m.content for m in ordered]
            entry["swipe_id"] = 0
        if message.raw_response:
            entry["extra"] = message.raw_response
        exported.append(entry)
    return {
        "messages": exported,
        "chat_metadata": chat.silly_tavern_metadata or {},
        "character_name": character_name,
        "user_name": user_name,
        "create_date": _send_date(chat.created_at),
    }
