import json
import os
import struct
import zlib

from fastapi.testclient import TestClient

from backend.db import File as StoredFile, db_session
from backend.main import _storage_path


def _png() -> bytes:
    def chunk(kind: bytes, data: bytes) -> bytes:
        crc = zlib.crc32(kind + data) & 0xFFFFFFFF
        return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", crc)

    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", struct.pack(">IIBBBBB", 1, 1, 8, 2, 0, 0, 0))
        + chunk(b"IDAT", zlib.compress(b"\x00\x00\x00\x00"))
        + chunk(b"IEND", b"")
    )


def _other_user(client: TestClient) -> dict[str, str]:
    token = client.post(
        "/auth/register", json={"email": "intruder@example.com", "password": "intruder-pass"}
    ).json()["token"]
    return {"Authorization": f"Bearer {token}"}


def test_character_crud(client: TestClient, auth_context: tuple[dict[str, str], str]) -> None:
    headers, _ = auth_context
    created = client.post(
        "/characters",
        headers=headers,
        json={"name": "Aria", "description": "Bard", "first_message": "Hello!"},
    )
    assert created.status_code == 201
    character = created.json()
    assert character["is_favorite"] is False
    assert character["updated_label"] == "just now"

    updated = client.put(
        f"/characters/{character['id']}",
        headers=headers,
        json={"personality": "Bold", "is_favorite": True},
    ).json()
    assert updated["personality"] == "Bold"
    assert updated["description"] == "Bard"
    assert updated["is_favorite"] is True

    assert client.delete(f"/characters/{character['id']}", headers=headers).status_code == 200
    assert client.get(f"/characters/{character['id']}", headers=headers).status_code == 404


def test_foreign_character_is_not_found(
    client: TestClient, auth_context: tuple[dict[str, str], str]
) -> None:
    headers, _ = auth_context
    character_id = client.post("/characters", headers=headers, json={"name": "Aria"}).json()["id"]
    intruder = _other_user(client)

    assert client.get(f"/characters/{character_id}", headers=intruder).status_code == 404
    response = client.put(f"/characters/{character_id}", headers=intruder, json={"name": "Stolen"})
    assert response.status_code == 404
    assert response.json() == {"detail": "Character not found."}
    assert client.get(f"/characters/{character_id}", headers=headers).json()["name"] == "Aria"


def test_favorites_filter_and_order(
    client: TestClient, auth_context: tuple[dict[str, str], str]
) -> None:
    headers, _ = auth_context
    first = client.post("/characters", headers=headers, json={"name": "First"}).json()["id"]
    client.post("/characters", headers=headers, json={"name": "Second"})
    toggled = client.post(f"/characters/{first}/favorite", headers=headers).json()
    assert toggled["is_favorite"] is True

    everyone = client.get("/characters", headers=headers).json()["characters"]
    assert everyone[0]["name"] == "First"
    favorites = client.get("/characters?favorite=true", headers=headers).json()["characters"]
    assert [c["name"] for c in favorites] == ["First"]


def test_json_import_and_export(client: TestClient, auth_context: tuple[dict[str, str], str]) -> None:
    headers, _ = auth_context
    card = {
        "spec": "chara_card_v2",
        "spec_version": "2.0",
        "data": {"name": "Nyx", "first_mes": "Evening.", "tags": ["noir"]},
    }
    imported = client.post("/characters/import", headers=headers, json={"card": card})
    assert imported.status_code == 201
    character_id = imported.json()["id"]
    assert imported.json()["first_message"] == "Evening."

    exported = client.get(f"/characters/{character_id}/export", headers=headers).json()
    assert exported["spec"] == "chara_card_v2"
    assert exported["data"]["tags"] == ["noir"]

    invalid = client.post("/characters/import", headers=headers, json={"card": {"data": {}}})
    assert invalid.status_code == 400


def test_png_export_and_import(client: TestClient, auth_context: tuple[dict[str, str], str]) -> None:
    headers, _ = auth_context
    character_id = client.post(
        "/characters", headers=headers, json={"name": "Vale", "scenario": "Harbour"}
    ).json()["id"]
    missing_avatar = client.get(f"/characters/{character_id}/export?format=png", headers=headers)
    assert missing_avatar.status_code == 400

    avatar = client.post(
        f"/characters/{character_id}/avatar",
        headers=headers,
        files={"file": ("vale.png", _png(), "image/png")},
    )
    assert avatar.status_code == 200
    assert avatar.json()["avatar_file_id"]

    exported = client.get(f"/characters/{character_id}/export?format=png", headers=headers)
    assert exported.status_code == 200
    assert exported.headers["content-type"] == "image/png"

    reimported = client.post(
        "/characters/import/png",
        headers=headers,
        files={"file": ("vale-card.png", exported.content, "image/png")},
    )
    assert reimported.status_code == 201
    assert reimported.json()["name"] == "Vale"
    assert reimported.json()["scenario"] == "Harbour"
    assert reimported.json()["avatar_file_id"]

    plain = client.post(
        "/characters/import/png",
        headers=headers,
        files={"file": ("plain.png", _png(), "image/png")},
    )
    assert plain.status_code == 400
    assert plain.json()["detail"] == "No character data found in PNG."


def test_png_export_with_missing_avatar_blob_is_not_found(
    client: TestClient, auth_context: tuple[dict[str, str], str]
) -> None:
    headers, _ = auth_context
    character_id = client.post("/characters", headers=headers, json={"name": "Wren"}).json()["id"]
    avatar_id = client.post(
        f"/characters/{character_id}/avatar",
        headers=headers,
        files={"file": ("wren.png", _png(), "image/png")},
    ).json()["avatar_file_id"]
    with db_session() as session:
        os.remove(_storage_path(session.get(StoredFile, avatar_id).relative_path))

    response = client.get(f"/characters/{character_id}/export?format=png", headers=headers)

    assert response.status_code == 404
    assert response.json()["detail"] == "Avatar file not found."

def test_personas_and_links(client: TestClient, auth_context: tuple[dict[str, str], str]) -> None:
    headers, _ = auth_context
    persona = client.post(
        "/personas",
        headers=headers,
        json={"name": "Sam", "description": "Traveller", "personality_traits": "curious"},
    ).json()
    character_id = client.post("/characters", headers=headers, json={"name": "Aria"}).json()["id"]

    links = client.post(
        f"/characters/{character_id}/personas",
        headers=headers,
        json={"persona_id": persona["id"], "is_default": True},
    ).json()
    assert links[0]["persona"]["name"] == "Sam"
    assert links[0]["is_default"] is True

    exported = client.get(f"/personas/{persona['id']}/export", headers=headers).json()
    assert exported == {"name": "Sam", "description": "Traveller", "personality": "curious"}

    assert client.delete(f"/personas/{persona['id']}", headers=headers).status_code == 200
    assert client.get(f"/characters/{character_id}/personas", headers=headers).json() == []


def test_persona_import_single_and_backup(
    client: TestClient, auth_context: tuple[dict[str, str], str]
) -> None:
    headers, _ = auth_context
    single = client.post(
        "/personas/import",
        headers=headers,
        json={"persona_data": {"name": "Kit", "description": "Engineer"}},
    )
    assert single.status_code == 201
    assert single.json()["name"] == "Kit"

    backup = {
        "personas": {"a.png": "Ada", "b.png": "Bex"},
        "persona_descriptions": {
            "a.png": {"description": "Mathematician", "title": "Countess"},
            "b.png": {"description": "Pilot"},
        },
        "default_persona": "a.png",
    }
    multi = client.post("/personas/import", headers=headers, json={"persona_data": backup}).json()
    assert multi["count"] == 2
    assert multi["message"] == "Successfully imported 2 personas"
    titles = {p["name"]: p["title"] for p in multi["personas"]}
    assert titles == {"Ada": "Countess", "Bex": None}

    empty = client.post(
        "/personas/import",
        headers=headers,
        json={"persona_data": {"personas": {"x.png": "X"}, "persona_descriptions": {}}},
    )
    assert empty.status_code == 400
    assert len(client.get("/personas", headers=headers).json()["personas"]) == 3


def test_tags_styles_and_links(client: TestClient, auth_context: tuple[dict[str, str], str]) -> None:
    headers, _ = auth_context
    tag = client.post("/tags", headers=headers, json={"name": "Fantasy"})
    assert tag.status_code == 201
    tag_id = tag.json()["id"]
    assert tag.json()["style"]["background_color"] == "#e5e7eb"
    assert client.post("/tags", headers=headers, json={"name": "fantasy"}).status_code == 409

    character_id = client.post("/characters", headers=headers, json={"name": "Aria"}).json()["id"]
    client.post("/characters", headers=headers, json={"name": "Untagged"})
    attached = client.post(
        f"/tags/{tag_id}/attach",
        headers=headers,
        json={"entity_type": "CHARACTER", "entity_id": character_id},
    )
    assert attached.json() == {"tag_ids": [tag_id]}
    tagged = client.get(f"/characters?tag_id={tag_id}", headers=headers).json()["characters"]
    assert [c["name"] for c in tagged] == ["Aria"]

    settings = client.put(
        "/chat-settings",
        headers=headers,
        json={"avatar_display_mode": "NEVER", "tag_styles": {tag_id: {"emoji": "🐉"}}},
    ).json()
    assert settings["avatar_display_mode"] == "NEVER"
    assert settings["tag_styles"][tag_id]["emoji"] == "🐉"
    assert settings["tag_styles"][tag_id]["foreground_color"] == "#1f2937"
    listed = client.get("/tags", headers=headers).json()["tags"]
    assert listed[0]["style"]["emoji"] == "🐉"

    detached = client.post(
        f"/tags/{tag_id}/detach",
        headers=headers,
        json={"entity_type": "CHARACTER", "entity_id": character_id},
    )
    assert detached.json() == {"tag_ids": []}

    intruder = _other_user(client)
    foreign = client.post(
        f"/tags/{tag_id}/attach",
        headers=intruder,
        json={"entity_type": "CHARACTER", "entity_id": character_id},
    )
    assert foreign.status_code == 404

    assert client.delete(f"/tags/{tag_id}", headers=headers).status_code == 200
    assert client.get("/tags", headers=headers).json()["tags"] == []


def test_tag_rename_rejects_blank_name(
    client: TestClient, auth_context: tuple[dict[str, str], str]
) -> None:
    headers, _ = auth_context
    tag_id = client.post("/tags", headers=headers, json={"name": "Noir"}).json()["id"]

    response = client.put(f"/tags/{tag_id}", headers=headers, json={"name": "   "})

    assert response.status_code == 400
    assert response.json()["detail"] == "Tag name is required."
    assert [t["name"] for t in client.get("/tags", headers=headers).json()["tags"]] == ["Noir"]

    renamed = client.put(f"/tags/{tag_id}", headers=headers, json={"name": " Mystery "})
    assert renamed.json()["name"] == "Mystery"

def test_api_keys_are_masked(client: TestClient, auth_context: tuple[dict[str, str], str]) -> None:
    headers, _ = auth_context
    created = client.post(
        "/api-keys",
        headers=headers,
        json={"label": "Work", "provider": "ANTHROPIC", "api_key": "sk-ant-0123456789abcd"},
    )
    assert created.status_code == 201
    assert created.json()["masked_key"] == "sk-a…abcd"
    listed = client.get("/api-keys", headers=headers).json()["api_keys"]
    assert "0123456789" not in json.dumps(listed)

    unknown = client.post(
        "/api-keys",
        headers=headers,
        json={"label": "X", "provider": "NOPE", "api_key": "whatever"},
    )
    assert unknown.status_code == 400


def test_profile_validation(client: TestClient, auth_context: tuple[dict[str, str], str]) -> None:
    headers, _ = auth_context
    missing_url = client.post(
        "/profiles",
        headers=headers,
        json={"name": "Local", "provider": "OLLAMA", "model_name": "llama3"},
    )
    assert missing_url.status_code == 400
    assert missing_url.json()["detail"] == "OLLAMA provider requires a base URL"

    unknown = client.post(
        "/profiles",
        headers=headers,
        json={"name": "X", "provider": "NOPE", "model_name": "m"},
    )
    assert unknown.json()["detail"] == "Unsupported provider: NOPE"

    first = client.post(
        "/profiles",
        headers=headers,
        json={
            "name": "Local",
            "provider": "OLLAMA",
            "model_name": "llama3",
            "base_url": "http://localhost:11434",
            "is_default": True,
        },
    ).json()
    second = client.post(
        "/profiles",
        headers=headers,
        json={
            "name": "Router",
            "provider": "OPENAI_COMPATIBLE",
            "model_name": "meta/llama",
            "base_url": "https://openrouter.ai/api/v1",
            "is_default": True,
        },
    ).json()
    profiles = {p["id"]: p for p in client.get("/profiles", headers=headers).json()["profiles"]}
    assert profiles[second["id"]]["is_default"] is True
    assert profiles[first["id"]]["is_default"] is False


def test_flat_card_payload_is_accepted(
    client: TestClient, auth_context: tuple[dict[str, str], str]
) -> None:
    headers, _ = auth_context
    raw = {"name": "Echo", "description": "plain v1 card"}
    response = client.post("/characters/import", headers=headers, json={"card": raw})
    assert response.status_code == 201
    assert response.json()["description"] == "plain v1 card"
