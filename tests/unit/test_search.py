"""
Unit tests for search helpers
"""

from api.search import SuggestionCache, level_suggestions, similarity


def test_similarity_scale():
    assert similarity("escuela", "escuela") == 100
    assert similarity("escuela", "") == 0
    assert similarity("", "") == 0
    assert similarity("kitten", "sitting") == 62


def test_similarity_ranks_closer_names_higher():
    query = "escuela primaria"
    assert similarity(query, "escuela primaria 12") > similarity(query, "jardin de infantes 3")


def test_level_suggestions():
    assert level_suggestions("tec") == ["Nivel: Técnica"]
    assert level_suggestions("ria", limit=2) == ["Nivel: Primaria", "Nivel: Secundaria"]
    assert level_suggestions("zzz") == []


def test_cache_keys_are_normalised():
    cache = SuggestionCache()
    cache.put("Jardín", ["Jardín N° 905"])
    assert cache.get("  jardin ") == ["Jardín N° 905"]
    assert cache.get("escuela") is None


def test_cache_returns_copies():
    cache = SuggestionCache()
    cache.put("abc", ["x"])
    cache.get("abc").append("y")
    assert cache.get("abc") == ["x"]


def test_cache_drops_oldest_half_when_full():
    cache = SuggestionCache(max_size=4)
    for i in range(5):
        cache.put(f"q{i}", [str(i)])

    assert len(cache) == 3
    assert cache.get("q0") is None
    assert cache.get("q1") is None
    assert cache.get("q4") == ["4"]
    assert cache.stats() == {"entries": 3, "max_size": 4}


def test_separate_caches_are_independent():
    first, second = SuggestionCache(), SuggestionCache()
    first.put("abc", ["x"])
    assert second.get("abc") is None
