"""Unit tests for places.py (deduplicator)."""
from places import dedupe, place_key, place_name
from schemas import ResearchPlace


class TestPlaceKey:
    def test_lowercases_and_strips_whitespace(self):
        assert place_key("  Cafe   A ") == "cafea"
        assert place_key("cafe\ta") == "cafea"

    def test_accents_are_kept(self):
        assert place_key("Café A") != place_key("Cafe A")

    def test_empty(self):
        assert place_key("") == ""
        assert place_key(None) == ""


class TestPlaceName:
    def test_dict_and_model(self):
        assert place_name({"name": "X"}) == "X"
        assert place_name(ResearchPlace(name="Y")) == "Y"
        assert place_name({}) == ""


class TestDedupe:
    def test_keeps_first_seen_order(self):
        xs = [{"name": "Cafe A"}, {"name": "cafe a"}, {"name": "Cafe B"}]
        result = dedupe(xs)
        assert [p["name"] for p in result] == ["Cafe A", "Cafe B"]

    def test_idempotent(self):
        xs = [{"name": n} for n in ["B", "a", "A", " b", "C", "c ", "D"]]
        once = dedupe(xs)
        assert dedupe(once) == once
        assert [p["name"] for p in once] == ["B", "a", "C", "D"]

    def test_first_occurrence_object_is_kept(self):
        first = {"name": "Tasca", "address": "1"}
        later = {"name": "tasca", "address": "2"}
        assert dedupe([first, later])[0] is first

    def test_works_on_models_and_generators(self):
        result = dedupe(ResearchPlace(name=n) for n in ["O Trevo", "o trevo", "Ramiro"])
        assert [p.name for p in result] == ["O Trevo", "Ramiro"]

    def test_empty(self):
        assert dedupe([]) == []
