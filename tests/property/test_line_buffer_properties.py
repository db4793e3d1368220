from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from shellpilot.terminal import LineBuffer

_LINE_CHARS = st.characters(exclude_categories=("Cs",), exclude_characters="\n\r")


def _split_points(data: bytes, cuts: list[int]) -> list[bytes]:
    points = sorted({cut % (len(data) + 1) for cut in cuts})
    chunks: list[bytes] = []
    start = 0
    for point in points:
        chunks.append(data[start:point])
        start = point
    chunks.append(data[start:])
    return chunks


@given(
    st.lists(st.text(alphabet=_LINE_CHARS, min_size=0, max_size=20), min_size=1, max_size=15),
    st.lists(st.integers(min_value=0, max_value=10_000), max_size=12),
)
def test_chunk_boundaries_do_not_change_lines(lines: list[str], cuts: list[int]) -> None:
    data = "\n".join(lines).encode("utf-8")
    buffer = LineBuffer()

    seen: list[str] = []
    for chunk in _split_points(data, cuts):
        buffer.feed(chunk)
        seen.extend(buffer.drain())
    seen.extend(buffer.flush())

    expected = list(lines)
    if expected and expected[-1] == "":
        expected.pop()
    assert seen == expected
    assert buffer.output == "\n".join(lines)


@given(st.lists(st.text(alphabet=_LINE_CHARS, min_size=0, max_size=20), min_size=0, max_size=15))
def test_crlf_endings_are_stripped(lines: list[str]) -> None:
    buffer = LineBuffer()

    buffer.feed("".join(f"{line}\r\n" for line in lines).encode("utf-8"))

    assert buffer.drain() == lines
    assert buffer.flush() == []
