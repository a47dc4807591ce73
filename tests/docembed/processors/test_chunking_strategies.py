import pytest

from docembed.documents import Modality
from docembed.errors import ChunkError, EmptyInputError
from docembed.extractors import ExtractionResult
from docembed.processors import (
    ChunkingStrategyFactory,
    SemanticChunking,
    TokenWindowChunking,
    reconstruct_text,
)

PARAGRAPHS = (
    "Embeddings map text into a vector space. Similar passages land close together.\n\n"
    "Chunking keeps every passage within the model context. Boundaries prefer paragraphs, "
    "then sentences, and only then raw tokens.\n\n"
    "A single very long sentence without any punctuation at all keeps going and going until it "
    "clearly exceeds the budget of a single chunk on its own and must be split by tokens\n\n"
    "Short closing paragraph."
)


def test_sentence_example_stays_within_two_tokens(sentences):
    text = "A. B. C."
    segments = list(SemanticChunking(sentences, max_tokens=2).chunk(text, document_id="abc"))

    assert [s.text for s in segments] == ["A. B. ", "C."]
    assert [s.ordinal for s in segments] == [0, 1]
    assert all(s.token_count <= 2 for s in segments)
    assert "".join(s.text for s in segments) == text


@pytest.mark.parametrize("max_tokens,overlap", [(8, 0), (12, 3), (20, 5), (64, 0)])
def test_reconstruction_is_lossless_and_bounded(words, max_tokens, overlap):
    chunker = SemanticChunking(words, max_tokens=max_tokens, overlap=overlap)
    segments = list(chunker.chunk(PARAGRAPHS, document_id="doc"))

    assert reconstruct_text(segments) == PARAGRAPHS
    assert all(words.count(s.text) <= max_tokens for s in segments)
    assert all(s.token_count == words.count(s.text) for s in segments)
    assert [s.ordinal for s in segments] == list(range(len(segments)))
    assert all(PARAGRAPHS[s.start_char:s.end_char] == s.text for s in segments)


def test_without_overlap_segments_are_contiguous(words):
    segments = list(SemanticChunking(words, max_tokens=10).chunk(PARAGRAPHS))

    assert segments[0].start_char == 0
    assert segments[-1].end_char == len(PARAGRAPHS)
    for previous, current in zip(segments, segments[1:]):
        assert current.start_char == previous.end_char


def test_paragraphs_are_not_merged_past_the_budget(words):
    text = "one two three\n\nfour five six\n\nseven"
    segments = list(SemanticChunking(words, max_tokens=6).chunk(text))

    assert [s.text for s in segments] == ["one two three\n\nfour five six\n\n", "seven"]


def test_oversized_paragraph_is_cut_at_sentence_ends(words):
    text = "One two three. Four five six. Seven eight."
    segments = list(SemanticChunking(words, max_tokens=5).chunk(text))

    assert [s.text for s in segments] == ["One two three. ", "Four five six. Seven eight."]


def test_oversized_sentence_is_cut_at_token_boundaries(words):
    text = " ".join(f"w{i}" for i in range(12))
    segments = list(SemanticChunking(words, max_tokens=5).chunk(text))

    assert [s.token_count for s in segments] == [5, 5, 2]
    assert segments[1].text.split()[0] == "w5"


def test_token_windows_repeat_overlap_tokens(words):
    text = " ".join(f"w{i}" for i in range(25))
    segments = list(TokenWindowChunking(words, max_tokens=10, overlap=3).chunk(text))

    assert [s.token_count for s in segments] == [10, 10, 10, 4]
    assert [s.text.split()[0] for s in segments] == ["w0", "w7", "w14", "w21"]
    assert reconstruct_text(segments) == text


def test_overlap_never_exceeds_budget(words):
    text = " ".join(f"w{i}" for i in range(40))
    segments = list(TokenWindowChunking(words, max_tokens=4, overlap=3).chunk(text))

    assert all(s.token_count <= 4 for s in segments)
    # Every segment still advances past the previous one
    for previous, current in zip(segments, segments[1:]):
        assert current.start_char > previous.start_char
        assert current.end_char > previous.end_char
    assert reconstruct_text(segments) == text


def test_markdown_blocks_keep_headings_and_fences(words):
    text = (
        "# Intro\nalpha beta gamma delta.\n\n"
        "```\nx = 1\ny = 2\n```\n\n"
        "## Usage\nrun the tool now please.\n"
    )
    segments = list(SemanticChunking(words, max_tokens=8, markdown=True).chunk(text))

    assert len(segments) == 3
    assert segments[0].text.startswith("# Intro")
    assert segments[1].text.startswith("```")
    assert segments[1].text.rstrip().endswith("```")
    assert segments[2].text.startswith("## Usage")
    assert reconstruct_text(segments) == text


def test_empty_text_is_rejected(words):
    chunker = SemanticChunking(words, max_tokens=8)

    with pytest.raises(EmptyInputError):
        chunker.chunk("", document_id="empty")
    with pytest.raises(EmptyInputError):
        chunker.chunk("   \n\n  ")


@pytest.mark.parametrize("max_tokens,overlap", [(0, 0), (4, 4), (4, -1)])
def test_invalid_budget_is_rejected(words, max_tokens, overlap):
    with pytest.raises(ChunkError):
        SemanticChunking(words, max_tokens=max_tokens, overlap=overlap)


def test_per_call_budget_is_validated(words):
    chunker = SemanticChunking(words, max_tokens=8)
    with pytest.raises(ChunkError):
        chunker.chunk("some text", max_tokens=2, overlap=2)


def test_sections_share_one_ordinal_sequence(words):
    extraction = ExtractionResult.from_texts(
        ["alpha beta", "", "gamma delta epsilon"],
        [{"page_number": 1}, {"page_number": 2}, {"page_number": 3}],
    )
    chunker = SemanticChunking(words, max_tokens=2)
    segments = list(chunker.chunk_sections(extraction.sections, "pdf-1", modality=Modality.TEXT))

    assert [s.ordinal for s in segments] == [0, 1, 2]
    assert [s.metadata["page_number"] for s in segments] == [1, 3, 3]
    for segment in segments:
        assert extraction.text[segment.start_char:segment.end_char] == segment.text


def test_sections_without_text_are_rejected(words):
    chunker = SemanticChunking(words, max_tokens=8)
    extraction = ExtractionResult.from_texts(["", "   "])

    with pytest.raises(EmptyInputError):
        chunker.chunk_sections(extraction.sections, "blank")


def test_chunk_iterators_are_independent(words):
    chunker = SemanticChunking(words, max_tokens=3)
    first = chunker.chunk("a b c d e f g", document_id="x")
    second = chunker.chunk("a b c d e f g", document_id="x")

    assert [s.text for s in first] == [s.text for s in second]


def test_factory_builds_named_strategies(words):
    assert isinstance(ChunkingStrategyFactory.create_strategy("token", words, max_tokens=4), TokenWindowChunking)
    markdown = ChunkingStrategyFactory.create_strategy("markdown", words, max_tokens=4)
    assert isinstance(markdown, SemanticChunking) and markdown.markdown

    with pytest.raises(ValueError):
        ChunkingStrategyFactory.create_strategy("recursive", words)
