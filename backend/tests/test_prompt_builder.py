from __future__ import annotations

from turnflow.domain.types import ChatMessage, RetrievedSegment
from turnflow.services.prompt_builder import PromptBuilder


def test_prompt_builder_orders_system_history_and_prompt() -> None:
    builder = PromptBuilder()
    messages = builder.build_messages(
        "You are terse.",
        [ChatMessage.user("My name is John"), ChatMessage.ai("Hi John")],
        "What is my name?",
    )

    assert [(m.role, m.content) for m in messages] == [
        ("system", "You are terse."),
        ("user", "My name is John"),
        ("assistant", "Hi John"),
        ("user", "What is my name?"),
    ]


def test_retrieved_segments_only_extend_the_final_prompt() -> None:
    builder = PromptBuilder()
    messages = builder.build_messages(
        None,
        [ChatMessage.user("earlier")],
        "Who founded Kestra?",
        [RetrievedSegment("Kestra was founded in 2019.", 0.9)],
    )

    assert messages[0].content == "earlier"
    assert messages[-1].content == (
        "Who founded Kestra?\n\nAnswer using the following information:\n"
        "Kestra was founded in 2019."
    )


def test_retrieval_section_dedupes_and_respects_budget() -> None:
    builder = PromptBuilder(retrieval_max_chars=200)
    segments = [
        RetrievedSegment("Alpha  fact.", 0.9),
        RetrievedSegment("alpha fact.", 0.8),
        RetrievedSegment("   ", 0.7),
        RetrievedSegment("B" * 150, 0.6),
        RetrievedSegment("C" * 100, 0.5),
    ]

    prompt = builder.augment_prompt("q", segments)

    assert prompt.count("lpha") == 1
    assert "B" * 150 in prompt
    assert "C" not in prompt


def test_no_segments_leaves_prompt_untouched() -> None:
    assert PromptBuilder().augment_prompt("plain", []) == "plain"
