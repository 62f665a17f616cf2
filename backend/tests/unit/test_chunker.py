import pytest

from agentcore.services.chunker import chunk_text, estimate_tokens, validate_chunk_params
from agentcore.services.errors import ValidationError


def test_windows_for_2500_chars():
    content = "".join(chr(ord("a") + i % 26) for i in range(2500))
    chunks = chunk_text(content, 1000, 200)
    assert [(c.start, c.end) for c in chunks] == [(0, 1000), (800, 1800), (1600, 2500)]
    assert [c.index for c in chunks] == [0, 1, 2]
    assert chunks[-1].content == content[1600:]


def test_consecutive_windows_overlap_by_exactly_overlap():
    content = "x" * 3700
    chunks = chunk_text(content, 500, 120)
    for prev, nxt in zip(chunks, chunks[1:]):
        assert prev.end - nxt.start == 120


def test_non_overlapping_prefixes_reconstruct_content():
    content = "The quick brown fox jumps over the lazy dog. " * 40
    size, overlap = 300, 50
    chunks = chunk_text(content, size, overlap)
    rebuilt = "".join(c.content[: size - overlap] for c in chunks[:-1]) + chunks[-1].content
    assert rebuilt == content


def test_short_content_is_single_chunk():
    chunks = chunk_text("hello", 1000, 200)
    assert len(chunks) == 1
    assert (chunks[0].start, chunks[0].end) == (0, 5)


def test_empty_content_has_no_chunks():
    assert chunk_text("", 1000, 200) == []


def test_token_estimate_is_quarter_of_length():
    assert estimate_tokens("a" * 1000) == 250
    assert chunk_text("a" * 1000, 1000, 0)[0].token_count == 250


@pytest.mark.parametrize("size,overlap", [(0, 0), (100, 100), (100, 150), (100, -1)])
def test_invalid_params_rejected(size, overlap):
    with pytest.raises(ValidationError):
        validate_chunk_params(size, overlap)
    with pytest.raises(ValidationError):
        chunk_text("content", size, overlap)
