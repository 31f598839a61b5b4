"""Concurrent redemption of one refresh token must succeed exactly once."""

import asyncio
import threading

from conftest import TEST_PASSWORD, build_stack
from authcore.service.errors import AuthFailure
from authcore.storage.memory import MemoryStore

WORKERS = 8


class RendezvousStore(MemoryStore):
    """Holds every reader at a barrier so all of them see the token as active."""

    def __init__(self, parties):
        super().__init__()
        self.barrier = threading.Barrier(parties)
        self.armed = False

    def get_by_token(self, token_value):
        token = super().get_by_token(token_value)
        if self.armed:
            self.barrier.wait(timeout=10)
        return token


def test_parallel_refresh_single_winner(codec, clock):
    store = RendezvousStore(WORKERS)
    stack = build_stack(store, codec, clock)
    stack.accounts.create_account("race@example.com", TEST_PASSWORD)
    pair = asyncio.run(stack.manager.login("race@example.com", TEST_PASSWORD)).pair

    results = []
    results_lock = threading.Lock()

    def redeem():
        result = asyncio.run(stack.manager.refresh(pair.refresh_token))
        with results_lock:
            results.append(result)

    store.armed = True
    threads = [threading.Thread(target=redeem) for _ in range(WORKERS)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(results) == WORKERS
    winners = [r for r in results if r.ok]
    losers = [r for r in results if not r.ok]
    assert len(winners) == 1
    assert all(r.failure is AuthFailure.INVALID_REFRESH_TOKEN for r in losers)

    store.armed = False
    active = store.list_active_for_user(winners[0].pair.user.id, now=clock.now())
    assert [t.token_value for t in active] == [winners[0].pair.refresh_token]


async def test_sequential_replay_after_success(stack, account):
    pair = (await stack.manager.login("u1@example.com", TEST_PASSWORD)).pair

    first = await stack.manager.refresh(pair.refresh_token)
    replays = [await stack.manager.refresh(pair.refresh_token) for _ in range(3)]

    assert first.ok
    assert all(r.failure is AuthFailure.INVALID_REFRESH_TOKEN for r in replays)
