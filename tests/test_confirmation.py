"""Tests for the confirmation polling loop."""

import asyncio

import pytest

from confirmation import (
    ConfirmationResult,
    ConfirmationStatus,
    backoff_delays,
    pause,
    wait_for_confirmation,
)
from errors import ConfirmationExhausted, LedgerUnavailable, TransactionRejected, TransferCancelled


def scripted_lookup(results):
    """Lookup returning (or raising) the given results in order; records each call."""
    calls = []
    script = list(results)

    async def lookup(receipt):
        calls.append(receipt)
        item = script.pop(0) if script else ConfirmationResult.not_yet_visible()
        if isinstance(item, Exception):
            raise item
        return item

    return lookup, calls


class TestBackoffDelays:
    def test_doubles_from_base_interval(self):
        assert backoff_delays(0.5, 5) == [0.5, 1.0, 2.0, 4.0, 8.0]

    def test_gap_between_attempts_grows(self):
        delays = backoff_delays(0.5, 8)
        for k in range(1, len(delays)):
            # gap between attempt k and k+1 is base * 2^k
            assert delays[k] == 0.5 * 2 ** k
            assert delays[k] > delays[k - 1]

    def test_max_interval_caps_each_pause(self):
        assert backoff_delays(1.0, 5, max_interval=3.0) == [1.0, 2.0, 3.0, 3.0, 3.0]


class TestWaitForConfirmation:
    def test_confirms_on_third_attempt(self, recorded_pauses):
        nyv = ConfirmationResult.not_yet_visible()
        lookup, calls = scripted_lookup([nyv, nyv, ConfirmationResult.confirmed({"slot": 7})])

        result = asyncio.run(wait_for_confirmation("sig", lookup, attempts=5, base_interval=0.5))

        assert result.status is ConfirmationStatus.CONFIRMED
        assert result.detail == {"slot": 7}
        assert calls == ["sig", "sig", "sig"]
        assert sum(recorded_pauses) == pytest.approx(0.5 * (1 + 2 + 4))

    def test_exhausts_after_exactly_n_polls(self, recorded_pauses):
        lookup, calls = scripted_lookup([])

        with pytest.raises(ConfirmationExhausted) as excinfo:
            asyncio.run(wait_for_confirmation("sig", lookup, attempts=5, base_interval=0.5))

        assert len(calls) == 5
        assert excinfo.value.receipt == "sig"
        assert recorded_pauses == [0.5, 1.0, 2.0, 4.0, 8.0]

    def test_rejected_stops_polling(self, recorded_pauses):
        nyv = ConfirmationResult.not_yet_visible()
        lookup, calls = scripted_lookup([nyv, ConfirmationResult.rejected("InstructionError"), nyv])

        with pytest.raises(TransactionRejected) as excinfo:
            asyncio.run(wait_for_confirmation("sig", lookup, attempts=10, base_interval=0.5))

        assert len(calls) == 2
        assert "InstructionError" in str(excinfo.value)

    def test_transport_failure_counts_as_not_visible(self, recorded_pauses):
        lookup, calls = scripted_lookup([LedgerUnavailable("timeout"), ConfirmationResult.confirmed()])

        result = asyncio.run(wait_for_confirmation("sig", lookup, attempts=3, base_interval=0.1))

        assert result.is_confirmed
        assert len(calls) == 2

    def test_requires_at_least_one_attempt(self):
        lookup, _ = scripted_lookup([])
        with pytest.raises(ValueError):
            asyncio.run(wait_for_confirmation("sig", lookup, attempts=0, base_interval=0.1))

    def test_cancel_before_polling(self):
        lookup, calls = scripted_lookup([ConfirmationResult.confirmed()])

        async def run():
            cancel = asyncio.Event()
            cancel.set()
            await wait_for_confirmation("sig", lookup, attempts=3, base_interval=10, cancel=cancel)

        with pytest.raises(TransferCancelled):
            asyncio.run(run())
        assert calls == []


class TestPause:
    def test_returns_when_delay_elapses(self):
        async def run():
            await pause(0.01, asyncio.Event())

        asyncio.run(run())

    def test_cancel_interrupts_long_pause(self):
        async def run():
            cancel = asyncio.Event()
            asyncio.get_running_loop().call_later(0.01, cancel.set)
            await pause(30, cancel)

        with pytest.raises(TransferCancelled):
            asyncio.run(asyncio.wait_for(run(), timeout=5))
