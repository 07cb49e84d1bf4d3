import pytest

from catalog_search.lexical import LexicalIndex, prefix_bonus, trigram_similarity, trigrams


class TestTrigrams:
    def test_padding(self):
        assert trigrams("cat") == {"  c", " ca", "cat", "at "}

    def test_words_are_padded_separately(self):
        assert trigrams("a b") == {"  a", " a ", "  b", " b "}

    def test_similarity_bounds(self):
        assert trigram_similarity(trigrams("robot"), trigrams("Robot")) == 1.0
        assert trigram_similarity(trigrams("robot"), trigrams("plush")) == 0.0
        assert trigram_similarity(set(), trigrams("plush")) == 0.0

    def test_typo_still_overlaps(self):
        assert 0.0 < trigram_similarity(trigrams("robott"), trigrams("robot")) < 1.0


class TestPrefixBonus:
    def test_full_prefix(self):
        assert prefix_bonus("Building Blocks", "buil") == pytest.approx(0.9)

    def test_word_prefix(self):
        assert prefix_bonus("Robot Building Kit", "buil") == pytest.approx(0.6)

    def test_no_prefix(self):
        assert prefix_bonus("Teddy Bear Plush", "buil") == 0.0
        assert prefix_bonus("Teddy Bear Plush", "") == 0.0


class TestAnalyzer:
    def test_stopwords_removed_and_stemmed(self, analyzer):
        assert analyzer.tokens("The racing cars with lights") == ["race", "car", "light"]

    def test_words_lowercased(self, analyzer):
        assert analyzer.words("Robot-Kit 2000") == ["robot", "kit", "2000"]


class TestLexicalIndex:
    @pytest.fixture
    def index(self, store, analyzer):
        return LexicalIndex(store.list_products(), analyzer=analyzer)

    def test_exact_word(self, index):
        scores = index.score("robot")
        assert set(scores) == {"p-robot-car", "p-robot-kit"}
        assert scores["p-robot-car"].prefix == pytest.approx(0.9)
        assert scores["p-robot-kit"].fts > 0

    def test_description_only_match_uses_full_text(self, index):
        scores = index.score("railway")
        assert scores["p-train"].fts > 0
        assert scores["p-train"].score >= 0.3

    def test_typo_match_through_trigrams(self, index):
        scores = index.score("robott")
        assert scores["p-robot-car"].fts == 0.0
        assert scores["p-robot-car"].trigram > 0.0
        assert scores["p-robot-car"].score > scores["p-robot-kit"].score

    def test_scores_in_unit_interval(self, index):
        for q in ("robot", "wooden train", "bear", "blocks building", "gift"):
            for signal in index.score(q).values():
                assert 0.0 < signal.score <= 1.0

    def test_no_match(self, index):
        assert index.score("xylophone") == {}
        assert index.score("   ") == {}

    def test_empty_catalog(self, analyzer):
        index = LexicalIndex([], analyzer=analyzer)
        assert len(index) == 0
        assert index.score("robot") == {}
