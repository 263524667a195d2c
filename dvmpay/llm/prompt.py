"""Turn chat history into the single text input a DVM job carries."""

import json
import logging
from typing import Any, List, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from dvmpay.errors import ValidationError
from dvmpay.schema import ChatMessage

logger = logging.getLogger(__name__)

Prompt = Union[str, Sequence[Union[ChatMessage, dict]]]

_PREFIX = {
    "system": "Instructions: {}\n\n",
    "user": "User: {}\n",
    "assistant": "Assistant: {}\n",
}


def _messages_from_json(prompt: str) -> List[ChatMessage]:
    try:
        parsed: Any = json.loads(prompt)
    except ValueError:
        return []
    if not isinstance(parsed, dict) or not isinstance(parsed.get("messages"), list):
        return []
    try:
        return [ChatMessage.model_validate(m) for m in parsed["messages"]]
    except PydanticValidationError as e:
        logger.warning("prompt JSON has malformed messages; sending it as plain text (%d errors)", e.error_count())
        return []


def format_messages(messages: Sequence[ChatMessage]) -> str:
    return "".join(_PREFIX[m.role].format(m.content) for m in messages)


def format_prompt(prompt: Prompt) -> str:
    """
    Plain text is sent unchanged. A message list, or a JSON string of the form
    {"messages": [...]}, is flattened into role-labelled lines.
    """
    if isinstance(prompt, str):
        messages = _messages_from_json(prompt)
        return format_messages(messages) if messages else prompt
    try:
        messages = [m if isinstance(m, ChatMessage) else ChatMessage.model_validate(m) for m in prompt]
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid chat message in prompt: {e}", cause=e) from e
    return format_messages(messages)
