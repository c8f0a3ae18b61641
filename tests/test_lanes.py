"""Tests for lane prompts and input shaping."""

from agentrun.schemas.run import Identity
from agentrun.sessions.lanes import (
    EMPTY_INPUT_MESSAGE,
    GUEST_PROMPT,
    build_assistant_prompt,
    build_builder_prompt,
    build_execution_prompt,
    format_user_input,
    normalize_prior_turns,
)


class TestFormatUserInput:
    def test_empty_map(self):
        assert format_user_input({}) == EMPTY_INPUT_MESSAGE
        assert format_user_input(None) == "Please begin."

    def test_blank_values_dropped(self):
        assert format_user_input({"topic": "  ", "notes": None}) == EMPTY_INPUT_MESSAGE

    def test_single_verbatim_key(self):
        assert format_user_input({"task": "Summarise the news"}) == "Summarise the news"
        assert format_user_input({"query": "weather in Oslo", "extra": ""}) == "weather in Oslo"

    def test_single_other_key(self):
        assert format_user_input({"topic": "AI"}) == "**topic**: AI"

    def test_multiple_keys(self):
        assert format_user_input({"topic": "AI", "length": 3}) == "**topic**: AI\n**length**: 3"


class TestNormalizePriorTurns:
    def test_string_content(self):
        turns = normalize_prior_turns(
            [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
        )
        assert turns == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]

    def test_parts(self):
        turns = normalize_prior_turns(
            [
                {
                    "role": "user",
                    "parts": [
                        {"type": "text", "text": "Find "},
                        {"type": "image", "url": "x"},
                        {"type": "text", "text": "cats"},
                    ],
                }
            ]
        )
        assert turns == [{"role": "user", "content": "Find cats"}]

    def test_content_list(self):
        turns = normalize_prior_turns([{"role": "user", "content": [{"type": "text", "text": "yo"}]}])
        assert turns == [{"role": "user", "content": "yo"}]

    def test_empty_and_invalid_dropped(self):
        turns = normalize_prior_turns(
            [{"role": "user", "content": "  "}, "junk", {"role": "system", "content": "x"}]
        )
        assert turns == [{"role": "assistant", "content": "x"}]

    def test_none(self):
        assert normalize_prior_turns(None) == []


class TestPrompts:
    def test_execution_prompt_mentions_budget(self):
        prompt = build_execution_prompt("You write haiku.", 25)
        assert prompt.startswith("You write haiku.")
        assert "maximum of 25 tool-call steps" in prompt

    def test_builder_prompt_new_agent(self):
        prompt = build_builder_prompt("News Bot", "research_agent", None)
        assert "Name: News Bot" in prompt
        assert "Status: Not yet built." in prompt
        assert "save_instructions" in prompt

    def test_builder_prompt_existing_agent(self):
        prompt = build_builder_prompt("News Bot", "research_agent", "Summarise news daily.")
        assert "Instructions already saved" in prompt
        assert "Summarise news daily." in prompt

    def test_assistant_prompt_guest(self):
        assert build_assistant_prompt(Identity.guest(), 50) == GUEST_PROMPT

    def test_assistant_prompt_user(self):
        prompt = build_assistant_prompt(Identity(user_id="u1"), 50)
        assert "list_workflows" in prompt
        assert "maximum of 50 tool-call steps" in prompt
