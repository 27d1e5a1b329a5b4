from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from backend import plugins
from backend.config import LOGGER
from backend.context import build_context
from backend.db import Character, Message, MessageRole, Persona
from backend.llm import FileAttachment, LLMMessage, LLMParams

CHAT_LOGGER = LOGGER.getChild("chat")

GREETING_MAX_TOKENS = 160


def build_system_prompt(
    character: Character,
    persona: Optional[Persona] = None,
    scenario: Optional[str] = None,
) -> str:
    prompt = character.system_prompt or ""
    prompt += f"\n\nYou are roleplaying as {character.name}."
    if character.description:
        prompt += f"\n\nCharacter Description:\n{character.description}"
    if character.personality:
        prompt += f"\n\nPersonality:\n{character.personality}"
    if persona is not None:
        prompt += f"\n\nYou are talking to {persona.name}."
        if persona.description:
            prompt += f"\n{persona.description}"
        if persona.personality_traits:
            prompt += f"\nThey are: {persona.personality_traits}"
    scenario = scenario or character.scenario
    if scenario:
        prompt += f"\n\nScenario:\n{scenario}"
    if character.example_dialogues:
        prompt += f"\n\nExample Dialogue:\n{character.example_dialogues}"
    prompt += (
        "\n\nStay in character at all times. Respond naturally and consistently with "
        f"{character.name}'s personality and the current scenario."
    )
    return prompt.strip()


def profile_params(parameters: Optional[Dict[str, object]]) -> Dict[str, object]:
    parameters = parameters or {}
    params: Dict[str, object] = {}
    if parameters.get("temperature") is not None:
        params["temperature"] = float(parameters["temperature"])
    if parameters.get("max_tokens") is not None:
        params["max_tokens"] = int(parameters["max_tokens"])
    if parameters.get("top_p") is not None:
        params["top_p"] = float(parameters["top_p"])
    if parameters.get("stop"):
        params["stop"] = list(parameters["stop"])
    return params


async def generate_greeting_message(
    system_prompt: str,
    character_name: str,
    provider: str,
    model_name: str,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    top_p: Optional[float] = None,
) -> str:
    llm = plugins.create_llm_provider(provider, base_url)
    greeting_prompt = (
        f"{system_prompt}\n\nThis is a brand new conversation. "
        f"Write {character_name}'s opening message to the user, in character."
    ).strip()
    params = LLMParams(
        model=model_name,
        temperature=temperature,
        max_tokens=max_tokens or GREETING_MAX_TOKENS,
        top_p=top_p,
        messages=[
            LLMMessage(role="system", content=greeting_prompt),
            LLMMessage(
                role="user",
                content=(
                    f"Greet the user as {character_name} would when meeting them for the "
                    "first time. Reply with the greeting only."
                ),
            ),
        ],
    )
    response = await llm.send_message(params, api_key or "")
    CHAT_LOGGER.info(
        "greeting_generated provider=%s model=%s tokens=%s",
        provider,
        model_name,
        response.usage.total_tokens,
    )
    return response.content.strip()


def history_messages(
    system_prompt: str,
    messages: Sequence[Message],
    provider: Optional[str] = None,
    model_name: Optional[str] = None,
    attachments: Sequence[FileAttachment] = (),
) -> List[LLMMessage]:
    """System prompt plus the active branch of the conversation, fitted to the model window.

    Only the first swipe of an imported swipe group is replayed. ``attachments``
    ride on the newest user message.
    """
    history: List[LLMMessage] = []
    for message in messages:
        if message.swipe_index:
            continue
        if message.role == MessageRole.USER:
            history.append(LLMMessage(role="user", content=message.content))
        elif message.role == MessageRole.ASSISTANT:
            history.append(LLMMessage(role="assistant", content=message.content))
    if attachments and history and history[-1].role == "user":
        history[-1] = history[-1].model_copy(update={"attachments": list(attachments)})
    return build_context(system_prompt, history, provider, model_name)
