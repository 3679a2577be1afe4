from __future__ import annotations

import asyncio

import pytest

from conftest import FakeLLM
from pipeline.errors import GenerationFailedError
from pipeline.generator import FragmentSplitter, ResponseGenerator, build_system_prompt


def test_splitter_cuts_after_each_marker():
    splitter = FragmentSplitter("•")

    assert splitter.feed("Sure thing") == []
    assert splitter.feed(" • let me") == ["Sure thing •"]
    assert splitter.feed(" check • and • ") == ["let me check •", "and •"]
    assert splitter.flush() is None


def test_splitter_returns_tail_on_flush_and_drops_marker_only_pieces():
    splitter = FragmentSplitter("•")

    assert splitter.feed("• •") == []
    assert splitter.feed("Goodbye") == []
    assert splitter.flush() == "Goodbye"


def test_splitter_falls_back_to_word_boundary_for_long_runs():
    splitter = FragmentSplitter("•", max_chars=20)

    pieces = splitter.feed("one two three four five six seven")

    assert pieces == ["one two three four"]
    assert splitter.flush() == "five six seven"


def test_system_prompt_contains_behavior_and_marker_instructions():
    prompt = build_system_prompt("  You answer for Acme Plumbing.  ", "|")

    assert prompt.startswith("You answer for Acme Plumbing.")
    assert "'|'" in prompt
    assert "{marker}" not in prompt


async def _collect(generator: ResponseGenerator, text: str, interaction: int, epoch: int):
    return [fragment async for fragment in generator.generate(text, interaction, epoch)]


def test_generate_yields_indexed_fragments_and_records_context():
    llm = FakeLLM(["Hi there", " •", " what can", " I do?"])
    generator = ResponseGenerator(llm, system_prompt="SYSTEM", greeting="Hello!")

    fragments = asyncio.run(_collect(generator, "hello", 1, 7))

    assert [(f.epoch, f.index, f.text) for f in fragments] == [
        (7, 0, "Hi there •"),
        (7, 1, "what can I do?"),
    ]
    assert generator.cursor == 2
    assert generator.last_reply == "Hi there • what can I do?"
    assert generator.history == [
        {"role": "system", "content": "SYSTEM"},
        {"role": "assistant", "content": "Hello!"},
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "Hi there • what can I do?"},
    ]
    assert llm.calls[0][-1] == {"role": "user", "content": "hello"}


def test_cursor_restarts_for_each_interaction():
    llm = FakeLLM(["A • B"], ["C"])
    generator = ResponseGenerator(llm, system_prompt="SYSTEM")

    first = asyncio.run(_collect(generator, "one", 1, 1))
    second = asyncio.run(_collect(generator, "two", 2, 2))

    assert [f.index for f in first] == [0, 1]
    assert [(f.epoch, f.index, f.text) for f in second] == [(2, 0, "C")]
    # Second request carries the whole conversation so far.
    assert [m["role"] for m in llm.calls[1]] == ["system", "user", "assistant", "user"]


def test_stream_failure_raises_generation_failed_and_keeps_partial_fragments():
    llm = FakeLLM(["First •", RuntimeError("upstream reset")])
    generator = ResponseGenerator(llm, system_prompt="SYSTEM")
    received = []

    async def _run():
        async for fragment in generator.generate("hi", 1, 1):
            received.append(fragment)

    with pytest.raises(GenerationFailedError) as exc_info:
        asyncio.run(_run())

    assert "upstream reset" in exc_info.value.detail
    assert [f.text for f in received] == ["First •"]
    assert generator.last_reply is None
    assert generator.history[-1] == {"role": "user", "content": "hi"}
