"""
Tests for walletkit_core.rate_limit — the per-user unlock limiter.
"""

from __future__ import annotations

import unittest

from walletkit_core.rate_limit import UnlockRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


class TestUnlockRateLimiter(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.limiter = UnlockRateLimiter(max_attempts=3, window_seconds=300.0, clock=self.clock)

    def test_allows_up_to_max(self):
        for _ in range(3):
            self.assertEqual(self.limiter.check("alice"), (True, 0))
        allowed, retry_after = self.limiter.check("alice")
        self.assertFalse(allowed)
        # One token refills every 100s.
        self.assertEqual(retry_after, 100)

    def test_retry_after_shrinks_with_time(self):
        for _ in range(3):
            self.limiter.check("alice")
        self.clock.now += 40
        allowed, retry_after = self.limiter.check("alice")
        self.assertFalse(allowed)
        self.assertIn(retry_after, (60, 61))

    def test_refill(self):
        for _ in range(3):
            self.limiter.check("alice")
        self.clock.now += 101
        self.assertTrue(self.limiter.check("alice")[0])
        self.assertFalse(self.limiter.check("alice")[0])

    def test_refill_is_capped(self):
        self.clock.now += 10_000
        for _ in range(3):
            self.assertTrue(self.limiter.check("alice")[0])
        self.assertFalse(self.limiter.check("alice")[0])

    def test_keys_are_independent(self):
        for _ in range(3):
            self.limiter.check("alice")
        self.assertTrue(self.limiter.check("bob")[0])

    def test_reset(self):
        for _ in range(3):
            self.limiter.check("alice")
        self.limiter.reset("alice")
        self.assertTrue(self.limiter.check("alice")[0])

    def test_reset_unknown_key(self):
        self.limiter.reset("nobody")

    def test_zero_means_unlimited(self):
        limiter = UnlockRateLimiter(max_attempts=0, clock=self.clock)
        for _ in range(100):
            self.assertEqual(limiter.check("alice"), (True, 0))

    def test_retry_after_at_least_one_second(self):
        limiter = UnlockRateLimiter(max_attempts=1, window_seconds=0.5, clock=self.clock)
        limiter.check("alice")
        self.assertEqual(limiter.check("alice"), (False, 1))


if __name__ == "__main__":
    unittest.main()
