from __future__ import annotations

import json

from hypothesis import given, settings
from hypothesis import strategies as st

from chatrelay.engine.stream_decoder import DecodedLine, StreamDecoder


def _decode_all(chunks):
    decoder = StreamDecoder()
    results = []
    for chunk in chunks:
        results.extend(decoder.feed(chunk))
    results.extend(decoder.flush())
    return results


def test_partial_line_is_held_until_newline():
    decoder = StreamDecoder()
    assert decoder.feed('{"a":') == []
    assert decoder.feed('1}\n{"b"') == [DecodedLine(value={"a": 1})]
    assert decoder.pending == '{"b"'
    assert decoder.feed(':2}\n') == [DecodedLine(value={"b": 2})]
    assert decoder.pending == ""


def test_flush_emits_final_unterminated_line_once():
    decoder = StreamDecoder()
    assert decoder.feed('{"x":true}') == []
    assert decoder.flush() == [DecodedLine(value={"x": True})]
    assert decoder.flush() == []


def test_malformed_line_yields_error_and_decoding_continues():
    results = _decode_all(['{"ok":1}\n  garbage here  \n{"ok":2}\n'])
    assert results == [
        DecodedLine(value={"ok": 1}),
        DecodedLine(error="garbage here"),
        DecodedLine(value={"ok": 2}),
    ]
    assert not results[1].ok


def test_blank_and_whitespace_lines_are_skipped():
    assert _decode_all(["\n\n   \n\t\n"]) == []


def test_malformed_residual_on_flush_is_an_error():
    decoder = StreamDecoder()
    decoder.feed('{"a":1}\n{"trunc')
    assert decoder.flush() == [DecodedLine(error='{"trunc')]


def test_crlf_line_endings_are_tolerated():
    assert _decode_all(['{"a":1}\r\n{"b":2}\r\n']) == [
        DecodedLine(value={"a": 1}),
        DecodedLine(value={"b": 2}),
    ]


def test_multibyte_character_split_across_byte_chunks():
    payload = (json.dumps({"text": "héllo ☃"}, ensure_ascii=False) + "\n").encode("utf-8")
    snowman_at = payload.index("☃".encode("utf-8"))
    chunks = [payload[: snowman_at + 1], payload[snowman_at + 1:]]
    assert _decode_all(chunks) == [DecodedLine(value={"text": "héllo ☃"})]


def test_counters_track_outcomes():
    decoder = StreamDecoder()
    decoder.feed('{"a":1}\nnope\n')
    decoder.flush()
    assert decoder.lines_decoded == 1
    assert decoder.lines_failed == 1


_values = st.dictionaries(
    st.text(min_size=1, max_size=5),
    st.one_of(st.integers(), st.text(max_size=10), st.booleans()),
    max_size=3,
)

# Non-ASCII and astral characters so byte cuts land inside sequences.
_wide_text = st.text(max_size=8) | st.sampled_from(["é", "☃", "日本語", "🙂x"])

_lines = st.one_of(
    st.dictionaries(st.text(min_size=1, max_size=4), _wide_text, max_size=3).map(lambda v: ("json", v)),
    _wide_text.filter(lambda s: "\n" not in s).map(lambda s: ("bad", "~" + s)),
    st.sampled_from(["", "  \t"]).map(lambda s: ("blank", s)),
)


def _render(lines, trailing_newline):
    parts = []
    for kind, item in lines:
        parts.append(json.dumps(item, ensure_ascii=False) if kind == "json" else item)
    return "\n".join(parts) + ("\n" if trailing_newline else "")


def _cut(data, cuts):
    positions = sorted({c % (len(data) + 1) for c in cuts})
    chunks = []
    previous = 0
    for position in positions:
        chunks.append(data[previous:position])
        previous = position
    chunks.append(data[previous:])
    return chunks


@settings(max_examples=50)
@given(values=st.lists(_values, min_size=1, max_size=6), cuts=st.lists(st.integers(min_value=0), max_size=10))
def test_results_do_not_depend_on_chunking(values, cuts):
    stream = "".join(json.dumps(v) + "\n" for v in values)
    chunks = _cut(stream, cuts)

    assert _decode_all(chunks) == _decode_all([stream])
    assert [r.value for r in _decode_all(chunks)] == values


@settings(max_examples=100)
@given(
    lines=st.lists(_lines, min_size=1, max_size=8),
    trailing_newline=st.booleans(),
    cuts=st.lists(st.integers(min_value=0), max_size=12),
)
def test_byte_chunking_with_mixed_lines_matches_whole_stream(lines, trailing_newline, cuts):
    stream = _render(lines, trailing_newline)
    whole = _decode_all([stream])

    assert _decode_all(_cut(stream.encode("utf-8"), cuts)) == whole
    assert _decode_all(_cut(stream, cuts)) == whole

    assert [r.value for r in whole if r.ok] == [item for kind, item in lines if kind == "json"]
    assert [r.error for r in whole if not r.ok] == [
        item.strip() for kind, item in lines if kind == "bad"
    ]
