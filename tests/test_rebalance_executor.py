"""
Rebalance Executor Tests
========================
Step order, stop-at-first-failure, queue removal and move recording.
"""

import pytest

from yield_rebalancer.config import ExecutionConfig
from yield_rebalancer.rebalance_executor import RebalanceExecutor


@pytest.fixture
def paced_executor(signer, queue, rate_limiter, history, sleep):
    return RebalanceExecutor(
        signer, queue, rate_limiter, history,
        ExecutionConfig(step_confirmation_delay=2.0, withdraw_confirmation_delay=3.0),
        sleep=sleep,
    )


class TestSuccessfulExecution:

    async def test_idle_deposit_is_approve_then_deposit(self, paced_executor, signer, sleep, make_opportunity):
        opp = make_opportunity(idle=True)

        result = await paced_executor.execute(opp)

        assert result.success
        assert signer.actions == ['approve', 'deposit']
        assert sleep.delays == [2.0]
        assert result.reference == result.step_references['deposit']

    async def test_rebalance_is_withdraw_approve_deposit(self, paced_executor, signer, sleep, make_opportunity):
        opp = make_opportunity()

        result = await paced_executor.execute(opp)

        assert result.success
        assert signer.actions == ['withdraw', 'approve', 'deposit']
        assert sleep.delays == [3.0, 2.0]
        assert set(result.step_references) == {'withdraw', 'approve', 'deposit'}

    async def test_call_arguments(self, executor, signer, make_opportunity):
        opp = make_opportunity(shares=777)

        await executor.execute(opp)

        withdraw, approve, deposit = (details for _, details in signer.calls)
        assert withdraw['vault'] == opp.from_vault
        assert withdraw['amount'] == 777
        assert approve['spender'] == opp.to_vault
        assert approve['amount'] == opp.amount_raw
        assert deposit['vault'] == opp.to_vault
        assert deposit['protocol'] == opp.to_protocol
        assert all(details['wallet_id'] == opp.wallet_id for _, details in signer.calls)

    async def test_withdraw_uses_raw_amount_without_shares(self, executor, signer, make_opportunity):
        opp = make_opportunity()

        await executor.execute(opp)

        assert signer.calls[0][1]['amount'] == opp.amount_raw

    async def test_success_records_move_and_history(self, executor, rate_limiter, history, make_opportunity):
        opp = make_opportunity()

        await executor.execute(opp)

        assert not (await rate_limiter.can_submit(opp.account)).allowed
        (entry,) = await history.recent(10)
        assert entry.success
        assert entry.opportunity.opportunity_id == opp.opportunity_id

    async def test_removed_from_queue(self, executor, queue, make_opportunity):
        opp = make_opportunity()
        await queue.add(opp)

        await executor.execute(opp)

        assert not await queue.contains(opp)


class TestFailedExecution:

    async def test_failed_withdraw_never_deposits(self, executor, signer, make_opportunity):
        signer.failures['withdraw'] = "insufficient shares"

        result = await executor.execute(make_opportunity())

        assert not result.success
        assert result.failed_step == 'withdraw'
        assert result.error == "insufficient shares"
        assert 'deposit' not in signer.actions
        assert signer.actions == ['withdraw']

    async def test_failed_deposit_keeps_earlier_references(self, executor, signer, make_opportunity):
        signer.failures['deposit'] = "reverted"

        result = await executor.execute(make_opportunity())

        assert not result.success
        assert result.failed_step == 'deposit'
        assert set(result.step_references) == {'withdraw', 'approve'}
        assert result.reference is None

    async def test_failure_still_removed_from_queue(self, executor, signer, queue, make_opportunity):
        signer.failures['approve'] = "nonce too low"
        opp = make_opportunity()
        await queue.add(opp)

        await executor.execute(opp)

        assert not await queue.contains(opp)
        assert await queue.size() == 0

    async def test_failure_logged_but_move_not_recorded(self, executor, signer, rate_limiter, history,
                                                        make_opportunity):
        signer.failures['withdraw'] = "boom"
        opp = make_opportunity()

        await executor.execute(opp)

        assert (await rate_limiter.can_submit(opp.account)).allowed
        (entry,) = await history.recent(10)
        assert not entry.success
        assert entry.result.failed_step == 'withdraw'

    async def test_signer_exception_becomes_failure(self, executor, signer, queue, make_opportunity):
        signer.raises['approve'] = RuntimeError("socket closed")
        opp = make_opportunity(idle=True)
        await queue.add(opp)

        result = await executor.execute(opp)

        assert not result.success
        assert result.failed_step == 'approve'
        assert "socket closed" in result.error
        assert signer.actions == ['approve']
        assert not await queue.contains(opp)
