"""
Fuzz Testing for the Persistence Layer
Property checks on backoff, nonce allocation and cache key handling
"""

import asyncio
from types import SimpleNamespace

from hypothesis import given, settings, strategies as st

from blockchain.models import ChainFamily, Network
from blockchain.nonce_manager import NonceManager
from utils.data_cache import DataCache

KEY_CHARS = st.characters(blacklist_categories=("Cs",), blacklist_characters="\x00")


def _network(base, cap):
    return Network(
        id='evm_fuzz', name='Fuzz', family=ChainFamily.EVM, chain_id=1,
        rpc_url='http://localhost', factory_address='0xfactory',
        backoff_base=base, backoff_cap=cap
    )


class StubSequenceClient:
    """Reports whatever nonce the test scripted next"""

    def __init__(self, values):
        self.values = list(values)
        self.network = SimpleNamespace(id='evm_fuzz')

    async def get_sequence(self, address):
        return self.values.pop(0)


class TestBackoffFuzzing:
    """Fuzz test retry delays"""

    @given(
        base=st.floats(min_value=0.001, max_value=10.0),
        cap=st.floats(min_value=0.001, max_value=120.0),
        attempt=st.integers(min_value=1, max_value=60)
    )
    def test_delay_bounded_by_cap(self, base, cap, attempt):
        delay = _network(base, cap).backoff_delay(attempt)

        assert 0 < delay <= cap

    @given(
        base=st.floats(min_value=0.001, max_value=10.0),
        attempt=st.integers(min_value=1, max_value=30)
    )
    def test_delay_never_shrinks(self, base, attempt):
        network = _network(base, 10 ** 9)

        assert network.backoff_delay(attempt + 1) >= network.backoff_delay(attempt)


class TestNonceFuzzing:
    """Fuzz test nonce allocation"""

    @given(
        chain_values=st.lists(st.integers(min_value=0, max_value=1000), min_size=1, max_size=20),
        conflicts=st.lists(st.booleans(), min_size=20, max_size=20)
    )
    @settings(max_examples=50)
    def test_conflict_retries_strictly_increase(self, chain_values, conflicts):
        """However the endpoint lags, a retry after a conflict moves forward"""
        async def run():
            manager = NonceManager()
            client = StubSequenceClient(chain_values)
            floor = None
            used = []

            for conflict in conflicts[:len(chain_values)]:
                nonce = await manager.next_nonce(client, '0xabc', floor)
                if used and floor is not None:
                    assert nonce > used[-1]
                used.append(nonce)
                floor = nonce + 1 if conflict else None

        asyncio.run(run())

    @given(
        broadcasts=st.lists(st.integers(min_value=0, max_value=1000), min_size=1, max_size=20),
        chain_value=st.integers(min_value=0, max_value=1000)
    )
    def test_never_below_accepted_broadcast(self, broadcasts, chain_value):
        manager = NonceManager()
        for nonce in broadcasts:
            manager.mark_broadcast('0xabc', 'evm_fuzz', nonce)

        nonce = asyncio.run(manager.next_nonce(StubSequenceClient([chain_value]), '0xabc'))

        assert nonce == max(chain_value, max(broadcasts) + 1)


class TestCacheKeyFuzzing:
    """Fuzz test prefix scans with LIKE metacharacters"""

    @given(
        owner=st.text(KEY_CHARS, min_size=1, max_size=20),
        other=st.text(KEY_CHARS, min_size=1, max_size=20)
    )
    @settings(max_examples=50)
    def test_scan_matches_literal_prefix(self, owner, other):
        cache = DataCache(":memory:")
        try:
            cache.set(f"todo:net:{owner}:1", {'v': 1})
            cache.set(f"todo:net:{other}:1", {'v': 2})

            keys = cache.scan(f"todo:net:{owner}:")

            assert all(key.startswith(f"todo:net:{owner}:") for key in keys)
            assert f"todo:net:{owner}:1" in keys
        finally:
            cache.close()
