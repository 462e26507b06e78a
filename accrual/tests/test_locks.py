import gc
import threading
from uuid import UUID

from accrual.locks import UserLocks


REFERRER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
REFERRED_ID = UUID("660e8400-e29b-41d4-a716-446655440001")


class TestUserLocks:
    """Tests for the per-user lock registry."""

    def test_same_user_shares_lock_while_held(self):
        locks = UserLocks()
        with locks.hold(REFERRED_ID):
            assert locks._lock_for(REFERRED_ID).locked()
            assert not locks._lock_for(REFERRER_ID).locked()

    def test_other_thread_waits_for_holder(self):
        locks = UserLocks()
        entered = threading.Event()
        order = []

        def second():
            with locks.hold(REFERRED_ID):
                order.append("second")

        with locks.hold(REFERRED_ID):
            t = threading.Thread(target=lambda: (entered.set(), second()))
            t.start()
            entered.wait(timeout=5)
            order.append("first")
        t.join(timeout=5)

        assert order == ["first", "second"]

    def test_released_locks_are_pruned(self):
        """Users whose lock nobody holds do not accumulate in the registry."""
        locks = UserLocks()
        for user_id in (REFERRER_ID, REFERRED_ID):
            with locks.hold(user_id):
                assert len(locks) >= 1
        gc.collect()

        assert len(locks) == 0
