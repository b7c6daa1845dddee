"""Tests for the quota gate counters."""

import pytest

from sitebot.models import QuotaState
from sitebot.quota import QuotaExceededError, QuotaGate


class TestGenerations:
    def test_one_generation_leaves_nine(self):
        gate = QuotaGate(10)

        gate.try_consume_generation(False)

        assert gate.generations_remaining == 9

    def test_eleventh_attempt_is_refused(self):
        gate = QuotaGate(10)
        for _ in range(10):
            gate.try_consume_generation(False)

        assert gate.generations_remaining == 0
        with pytest.raises(QuotaExceededError):
            gate.try_consume_generation(False)
        assert gate.generations_remaining == 0

    def test_override_credential_does_not_consume(self):
        gate = QuotaGate(1)

        gate.try_consume_generation(True)

        assert gate.generations_remaining == 1

    def test_override_bypasses_empty_counter(self):
        gate = QuotaGate(0)

        gate.ensure_generation_available(True)
        gate.try_consume_generation(True)

        assert gate.generations_remaining == 0

    def test_ensure_does_not_mutate(self):
        gate = QuotaGate(3)

        gate.ensure_generation_available(False)

        assert gate.generations_remaining == 3

    def test_reset_generations_floors_at_zero(self):
        gate = QuotaGate(2)

        gate.reset_generations(-5)

        assert gate.generations_remaining == 0


class TestDownloads:
    def test_download_refused_at_zero(self):
        gate = QuotaGate(10, 0)

        with pytest.raises(QuotaExceededError):
            gate.try_consume_download()
        assert gate.downloads_remaining == 0

    def test_grant_then_consume(self):
        gate = QuotaGate(10, 0)

        gate.grant_downloads(5)
        gate.try_consume_download()

        assert gate.downloads_remaining == 4

    def test_grant_must_be_positive(self):
        gate = QuotaGate(10, 0)

        with pytest.raises(ValueError):
            gate.grant_downloads(0)

    def test_counters_are_independent(self):
        gate = QuotaGate(10, 2)

        gate.try_consume_download()

        assert gate.snapshot() == QuotaState(generations_remaining=10, downloads_remaining=1)


def test_negative_initial_values_are_floored():
    gate = QuotaGate.from_state(QuotaState(generations_remaining=-3, downloads_remaining=-1))

    assert gate.snapshot() == QuotaState(0, 0)
