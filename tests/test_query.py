"""
Tests for synmem.query — stop-word normalization and FTS5 expression building.
"""

import pytest

from synmem.query import (
    _is_identifier,
    build_match_expression,
    fts_terms,
)


class TestIsIdentifier:
    @pytest.mark.parametrize("word", [
        "camelCase", "PascalCase", "snake_case", "MAX_SIZE", "com.example.Foo",
    ])
    def test_identifiers(self, word):
        assert _is_identifier(word)

    @pytest.mark.parametrize("word", ["hello", "widget", "end."])
    def test_plain_words(self, word):
        assert not _is_identifier(word)


class TestFtsTerms:
    def test_basic(self):
        assert fts_terms("alpha widget") == ["alpha", "widget"]

    def test_stop_words_removed(self):
        assert fts_terms("how does the Lexer work?") == ["Lexer", "work"]

    def test_french_stop_words_removed(self):
        assert fts_terms("comment créer un incident dans le système") == \
            ["créer", "incident", "système"]

    def test_only_stop_words_kept(self):
        assert fts_terms("the") == ["the"]

    def test_punctuation_only(self):
        assert fts_terms("*** ??? ---") == []

    def test_quotes_stripped(self):
        assert fts_terms('"alpha" widget') == ["alpha", "widget"]

    def test_duplicates_removed_case_insensitive(self):
        assert fts_terms("Alpha alpha ALPHA") == ["Alpha"]

    def test_fts_operators_are_plain_terms(self):
        terms = fts_terms("alpha AND NEAR(beta)")
        assert "AND" in terms
        assert "NEAR(beta" in terms


class TestBuildMatchExpression:
    def test_or_of_quoted_terms(self):
        assert build_match_expression(["alpha", "widget"]) == '"alpha" OR "widget"'

    def test_single(self):
        assert build_match_expression(["alpha"]) == '"alpha"'

    def test_embedded_quote_escaped(self):
        assert build_match_expression(['a"b']) == '"a""b"'

    def test_empty(self):
        assert build_match_expression([]) == ""
