from storage.cache import LRUGraphCache
from tests.graphs import make_graph


def test_least_recently_used_is_evicted_first():
    cache = LRUGraphCache(max_entries=2)
    a, b, c = make_graph('/a'), make_graph('/b'), make_graph('/c')
    cache.put('/a', a)
    cache.put('/b', b)
    assert cache.get('/a') is a
    cache.put('/c', c)

    assert '/b' not in cache
    assert cache.get('/a') is a and cache.get('/c') is c
    assert cache.stats()['evictions'] == 1


def test_weight_budget():
    graph = make_graph(n_nodes=2)  # 2 nodes + 2 edges + 1 explanation
    cache = LRUGraphCache(max_entries=10, max_weight=graph.weight * 2)
    cache.put('/a', graph)
    cache.put('/b', make_graph('/b'))
    cache.put('/c', make_graph('/c'))

    assert len(cache) == 2
    assert '/a' not in cache
    assert cache.stats()['weight'] == graph.weight * 2


def test_graph_over_budget_is_not_cached():
    cache = LRUGraphCache(max_weight=3)
    cache.put('/a', make_graph(n_nodes=2))
    assert len(cache) == 0
    assert cache.stats()['weight'] == 0


def test_replacing_a_key_swaps_the_whole_graph():
    cache = LRUGraphCache()
    old, new = make_graph('/a'), make_graph('/a', n_nodes=1)
    cache.put('/a', old)
    cache.put('/a', new)

    assert cache.get('/a') is new
    assert cache.stats()['weight'] == new.weight


def test_invalidate_and_stats():
    cache = LRUGraphCache()
    cache.put('/a', make_graph('/a'))
    assert cache.get('/missing') is None
    cache.get('/a')
    cache.invalidate('/a')
    cache.invalidate('/never')

    assert cache.stats() == {'entries': 0, 'weight': 0, 'hits': 1, 'misses': 1, 'evictions': 0}
