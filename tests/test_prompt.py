from __future__ import annotations

import io
import os

import pytest

from taskmill.runtime.orchestrator.prompt import ConsoleSelectionPrompt, parse_selection, render_candidates
from taskmill.runtime.orchestrator.scoring import rank_candidates

from conftest import make_candidate


@pytest.mark.parametrize(
    "text,kind,picks",
    [
        ("1 3\n", "picks", (1, 3)),
        ("2,4", "picks", (2, 4)),
        (" 5 ,  6 ", "picks", (5, 6)),
        ("q\n", "quit", ()),
        ("QUIT", "quit", ()),
        ("", "none", ()),
        ("later", "none", ()),
    ],
)
def test_parse_selection(text: str, kind: str, picks: tuple[int, ...]) -> None:
    reply = parse_selection(text)

    assert reply.kind == kind
    assert reply.picks == picks


def test_render_candidates_numbers_from_one() -> None:
    ranked = rank_candidates([make_candidate("A", title="Alpha", domain="Area: ui"), make_candidate("B", title="Beta")])

    lines = render_candidates(ranked).splitlines()

    assert lines[0].strip().startswith("1. A  Alpha [Area: ui]")
    assert lines[1].strip().startswith("2. B  Beta")


@pytest.fixture
def pipe():  # noqa: ANN201
    read_fd, write_fd = os.pipe()
    reader = os.fdopen(read_fd, "r")
    writer = os.fdopen(write_fd, "w")
    yield reader, writer
    reader.close()
    if not writer.closed:
        writer.close()


def test_console_prompt_reads_picks(pipe) -> None:  # noqa: ANN001
    reader, writer = pipe
    out = io.StringIO()
    writer.write("2 1\n")
    writer.flush()

    reply = ConsoleSelectionPrompt(stdin=reader, stdout=out).ask(
        rank_candidates([make_candidate("A"), make_candidate("B")]), free_slots=2, timeout=5
    )

    assert reply.kind == "picks"
    assert reply.picks == (2, 1)
    assert "2 free slot(s)" in out.getvalue()


def test_console_prompt_times_out(pipe) -> None:  # noqa: ANN001
    reader, _writer = pipe

    reply = ConsoleSelectionPrompt(stdin=reader, stdout=io.StringIO()).ask(
        rank_candidates([make_candidate("A")]), free_slots=1, timeout=0.05
    )

    assert reply.kind == "none"


def test_console_prompt_treats_eof_as_no_choice(pipe) -> None:  # noqa: ANN001
    reader, writer = pipe
    writer.close()

    reply = ConsoleSelectionPrompt(stdin=reader, stdout=io.StringIO()).ask(
        rank_candidates([make_candidate("A")]), free_slots=1, timeout=1
    )

    assert reply.kind == "none"


def test_console_prompt_skips_empty_list() -> None:
    out = io.StringIO()

    assert ConsoleSelectionPrompt(stdin=io.StringIO(), stdout=out).ask([], free_slots=1, timeout=1).kind == "none"
    assert out.getvalue() == ""
