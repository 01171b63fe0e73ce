import asyncio

import pytest

from strangers.matchmaker import (
    Matchmaker,
    NotReadyError,
    Search,
    SearchInProgress,
    SearchOutcome,
)
from strangers.pool import WaitingEntry, WaitingPool
from strangers.store import StoreUnavailable


@pytest.fixture
def pool(store):
    return WaitingPool(store)


def matchmaker(pool, max_attempts=20):
    return Matchmaker(pool, poll_interval=0.01, max_attempts=max_attempts)


async def test_alone_exhausts(pool):
    result = await matchmaker(pool, max_attempts=3).search("a")
    assert result.outcome is SearchOutcome.EXHAUSTED
    assert result.attempts == 3
    assert await pool.size() == 0


async def test_two_searchers_pair_up(pool):
    results = await asyncio.gather(
        matchmaker(pool).search("a"), matchmaker(pool).search("b")
    )
    outcomes = {result.outcome for result in results}
    assert outcomes == {SearchOutcome.MATCHED, SearchOutcome.CLAIMED}
    (matched,) = [r for r in results if r.outcome is SearchOutcome.MATCHED]
    assert matched.counterpart in ("a", "b")
    assert await pool.size() == 0


async def test_waiting_entry_gets_claimed(pool):
    # Somebody already waits: the newcomer claims them on its first poll.
    await pool.enqueue("early", created_at=0)
    result = await matchmaker(pool).search("late")
    assert result.outcome is SearchOutcome.MATCHED
    assert result.counterpart == "early"
    assert result.attempts == 1
    assert await pool.size() == 0


async def test_three_searchers(pool):
    searchers = {
        address: matchmaker(pool, max_attempts=10).search(address)
        for address in ("a", "b", "c")
    }
    results = dict(zip(searchers, await asyncio.gather(*searchers.values())))
    by_outcome = {}
    for address, result in results.items():
        by_outcome.setdefault(result.outcome, []).append(address)
    assert sorted(map(len, by_outcome.values())) == [1, 1, 1]
    (winner,) = by_outcome[SearchOutcome.MATCHED]
    (claimed,) = by_outcome[SearchOutcome.CLAIMED]
    assert results[winner].counterpart == claimed
    assert await pool.size() == 0


async def test_requires_address(pool):
    with pytest.raises(NotReadyError):
        matchmaker(pool).search(None)


async def test_one_search_at_a_time(pool):
    mm = matchmaker(pool)
    mm.search("a")
    with pytest.raises(SearchInProgress):
        mm.search("a")
    await mm.cancel()


async def test_cancel_withdraws(pool):
    mm = matchmaker(pool)
    task = mm.search("a")
    await asyncio.sleep(0.03)
    assert await pool.peek_self("a")
    await mm.cancel()
    assert task.cancelled()
    assert not mm.searching
    assert await pool.size() == 0
    # Idempotent.
    await mm.cancel()


async def test_enqueue_failure_is_retried(pool, mocker):
    enqueue = pool.enqueue
    calls = []

    async def flaky_enqueue(address, created_at=None):
        calls.append(address)
        if len(calls) == 1:
            raise StoreUnavailable("down")
        return await enqueue(address, created_at)

    mocker.patch.object(pool, "enqueue", side_effect=flaky_enqueue)
    mm = matchmaker(pool)
    mm.search("a")
    await asyncio.sleep(0.05)
    assert calls == ["a", "a"]
    assert await pool.peek_self("a")
    await mm.cancel()


async def test_poll_failure_keeps_searching(pool, mocker):
    await pool.enqueue("other", created_at=0)
    find = pool.find_oldest_other
    mocker.patch.object(
        pool,
        "find_oldest_other",
        side_effect=[StoreUnavailable("down"), await find("me")],
    )
    result = await matchmaker(pool).search("me")
    assert result.outcome is SearchOutcome.MATCHED
    assert result.attempts == 2


class TestClaimConflicts:
    @pytest.fixture
    async def search(self, pool):
        search = Search(pool, "me", poll_interval=0.01, max_attempts=5)
        await search.enqueue()
        await pool.enqueue("other", created_at=0)
        return search

    async def test_candidate_taken_by_third_party(self, search, pool, mocker):
        claim = pool.claim_pair

        async def third_party_first(self_address, other_address):
            await pool.withdraw(other_address)
            return await claim(self_address, other_address)

        mocker.patch.object(pool, "claim_pair", side_effect=third_party_first)
        assert await search.poll() is None
        # Back in line at the original position.
        assert await pool.find_oldest_other("x") == search.entry

    async def test_claimed_while_claiming(self, search, pool, mocker):
        claim = pool.claim_pair

        async def claimed_first(self_address, other_address):
            await pool.withdraw(self_address)
            return await claim(self_address, other_address)

        mocker.patch.object(pool, "claim_pair", side_effect=claimed_first)
        result = await search.poll()
        assert result.outcome is SearchOutcome.CLAIMED
        # The candidate keeps its place for somebody else.
        assert await pool.find_oldest_other("x") == WaitingEntry("other", 0)
        assert not await pool.peek_self("me")

    async def test_nothing_removed(self, search, pool, mocker):
        mocker.patch.object(pool, "claim_pair", return_value=set())
        assert await search.poll() is None

    async def test_claim_failure_abandons_candidate(
        self, search, pool, mocker
    ):
        mocker.patch.object(
            pool, "claim_pair", side_effect=StoreUnavailable("down")
        )
        assert await search.poll() is None
        assert await pool.size() == 2

    async def test_restore_failure_enqueues_again(self, search, pool, mocker):
        claim = pool.claim_pair

        async def third_party_first(self_address, other_address):
            await pool.withdraw(other_address)
            return await claim(self_address, other_address)

        mocker.patch.object(pool, "claim_pair", side_effect=third_party_first)
        mocker.patch.object(
            pool, "restore", side_effect=StoreUnavailable("down")
        )
        assert await search.poll() is None
        assert search.entry is None
