import json

import pytest

from dvmpay.errors import ValidationError
from dvmpay.llm.prompt import format_prompt
from dvmpay.schema import ChatMessage


def test_plain_text_is_sent_unchanged():
    assert format_prompt("Summarize: hello world") == "Summarize: hello world"


def test_message_list_is_flattened_with_role_labels():
    messages = [
        ChatMessage(role="system", content="Be brief"),
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello"},
        {"role": "user", "content": "Bye"},
    ]
    assert format_prompt(messages) == "Instructions: Be brief\n\nUser: Hi\nAssistant: Hello\nUser: Bye\n"


def test_messages_json_string_is_flattened():
    prompt = json.dumps({"messages": [{"role": "user", "content": "Hi"}]})
    assert format_prompt(prompt) == "User: Hi\n"


def test_other_json_is_plain_text():
    prompt = json.dumps({"question": "why"})
    assert format_prompt(prompt) == prompt


def test_malformed_messages_json_falls_back_to_text():
    prompt = json.dumps({"messages": [{"role": "wizard", "content": "x"}]})
    assert format_prompt(prompt) == prompt


def test_bad_message_in_list_is_rejected():
    with pytest.raises(ValidationError):
        format_prompt([{"role": "user"}])
