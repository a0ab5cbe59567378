from __future__ import annotations
from typing import Dict, List, Sequence, Tuple

from llmgate.core.models import Message, ModelSettings


def split_system(
    text: str, history: Sequence[Message], settings: ModelSettings
) -> Tuple[str, List[Dict[str, str]]]:
    """
    For backends with a separate system field: system-role turns in the history
    are merged into the system prompt, everything else becomes the turn list.
    """
    system_parts = [settings.system_prompt] if settings.system_prompt else []
    turns: List[Dict[str, str]] = []
    for m in history:
        if m.role == "system":
            if m.content:
                system_parts.append(m.content)
        else:
            turns.append(m.as_dict())
    turns.append({"role": "user", "content": text})
    return "\n\n".join(system_parts), turns


def folded_messages(text: str, history: Sequence[Message], settings: ModelSettings) -> List[Dict[str, str]]:
    """OpenAI-style list: system prompt (if any) as the first turn."""
    messages: List[Dict[str, str]] = []
    if settings.system_prompt:
        messages.append({"role": "system", "content": settings.system_prompt})
    messages.extend(m.as_dict() for m in history)
    messages.append({"role": "user", "content": text})
    return messages
