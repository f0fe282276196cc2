import pytest

from utils import text_processing


def test_get_text_segments_paragraph():
    text = "Para one.\n\nPara two."  # two paragraphs
    segments = text_processing.get_text_segments(text, "paragraph")
    assert len(segments) == 2
    assert segments[0] == ("Para one.", 0, 9)
    assert segments[1][0] == "Para two."
    assert text[segments[1][1] : segments[1][2]] == "Para two."


def test_get_text_segments_sentence_offsets():
    text = "Mara waited. Did he come?  He did!"
    segments = text_processing.get_text_segments(text, "sentence")
    assert [s[0] for s in segments] == ["Mara waited.", "Did he come?", "He did!"]
    for sentence, start, end in segments:
        assert text[start:end] == sentence


def test_get_text_segments_empty_and_unknown_level():
    assert text_processing.get_text_segments("   ") == []
    with pytest.raises(ValueError, match="chapter"):
        text_processing.get_text_segments("text", "chapter")


def test_word_helpers():
    assert text_processing.count_words("Brother Tomas's lamp-light flickered.") == 4
    assert text_processing.words("The the THE") == ["the", "the", "the"]
    assert text_processing.lexical_diversity("The the cat") == 2 / 3
    assert text_processing.lexical_diversity("") == 0.0
    assert text_processing.normalize_whitespace("  a \n\t b  ") == "a b"


def test_dialogue_ratio():
    assert text_processing.dialogue_ratio("") == 0.0
    assert text_processing.dialogue_ratio('"Go."') == 3 / 5
    assert text_processing.dialogue_ratio("No speech here.") == 0.0


def test_repeated_ngrams():
    text = "the bell rang and the bell rang again"
    assert text_processing.repeated_ngrams(text, 3, 2) == {"the bell rang": 2}


def test_looks_truncated():
    assert text_processing.looks_truncated("She opened the")
    assert not text_processing.looks_truncated("She opened the door.")
    assert not text_processing.looks_truncated('"Wait!"')
    assert not text_processing.looks_truncated("")
