from potsettle.cache import SettlementCache, cache_key
from potsettle.models import ParticipantPosition

POSITIONS = [
    ParticipantPosition("a", "Alice", 500),
    ParticipantPosition("b", "Bob", -500),
]


def test_key_ignores_position_order():
    assert cache_key("s1", POSITIONS) == cache_key("s1", list(reversed(POSITIONS)))
    assert cache_key("s1", POSITIONS) != cache_key("s2", POSITIONS)
    assert cache_key("s1", POSITIONS, {"algorithm": "greedy"}) != cache_key("s1", POSITIONS)


def test_key_changes_with_amounts():
    changed = [ParticipantPosition("a", "Alice", 501), ParticipantPosition("b", "Bob", -501)]
    assert cache_key("s1", POSITIONS) != cache_key("s1", changed)


def test_get_put_and_stats():
    cache = SettlementCache()
    key = cache_key("s1", POSITIONS)

    assert cache.get(key) is None
    cache.put(key, "result")
    assert cache.get(key) == "result"

    assert cache.hits == 1
    assert cache.misses == 1
    assert cache.size == 1


def test_clear_by_session():
    cache = SettlementCache()
    cache.put(cache_key("s1", POSITIONS), 1)
    cache.put(cache_key("s1", POSITIONS, {"algorithm": "hub"}), 2)
    cache.put(cache_key("s2", POSITIONS), 3)

    assert cache.clear("s1") == 2
    assert cache.clear("missing") == 0
    assert cache.size == 1
    assert cache.clear() == 1
