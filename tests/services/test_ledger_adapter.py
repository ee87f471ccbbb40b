"""
Tests for LedgerSyncAdapter.

Covers the outcome matrix (confirmed, reverted, timed out, failed
transport), exactly-once reconciliation, late and out-of-band answers, and
the transaction history kept alongside submissions.
"""

import pytest

from guarantee_kernel.domain.ledger import (
    LedgerOperation,
    LedgerOperationKind,
    LedgerOutcomeStatus,
    LedgerReceipt,
    ReceiptStatus,
)
from guarantee_kernel.domain.stages import Stage
from guarantee_kernel.domain.transaction import TransactionStatus
from guarantee_kernel.exceptions import StaleStageError, SubmissionPendingError
from guarantee_kernel.services.ledger_adapter import LedgerSyncAdapter
from tests.fakes import BUYER, FakeLedgerClient, drive_to


def _fee_operation(rid: str) -> LedgerOperation:
    return LedgerOperation(
        request_id=rid,
        kind=LedgerOperationKind.PAY_ISSUANCE_FEE,
        key=f"{rid}:4",
        actor=BUYER.lower(),
        expected_stage=Stage.SELLER_APPROVED,
        target_stage=Stage.FEE_PAID,
    )


@pytest.fixture
def bound(kernel, submitted) -> str:
    """Request id of an Application at stage 3."""
    drive_to(kernel.orchestrator, submitted, Stage.SELLER_APPROVED)
    return submitted


class TestConfirmed:
    def test_confirmed_receipt_advances(self, kernel, bound):
        adapter = kernel.adapter
        outcome = adapter.resolve(adapter.submit(_fee_operation(bound)), 1.0)
        assert outcome.status is LedgerOutcomeStatus.CONFIRMED
        assert outcome.receipt.tx_hash.startswith("0x")
        assert kernel.registry.get(bound).current_stage is Stage.FEE_PAID
        assert not adapter.is_pending(f"{bound}:4")

    def test_transaction_recorded_as_success(self, kernel, bound):
        adapter = kernel.adapter
        outcome = adapter.resolve(adapter.submit(_fee_operation(bound)), 1.0)
        latest = kernel.transactions.history(BUYER)[0]
        assert latest.type == "pay_issuance_fee"
        assert latest.status is TransactionStatus.SUCCESS
        assert latest.tx_hash == outcome.receipt.tx_hash
        assert latest.token_symbol == "USDC"
        assert latest.network == "base-sepolia"

    def test_duplicate_confirmation_is_noop(self, kernel, bound, captured_logs):
        adapter = kernel.adapter
        operation = _fee_operation(bound)
        adapter.resolve(adapter.submit(operation), 1.0)
        before = kernel.registry.get(bound)

        receipt = LedgerReceipt(operation.key, ReceiptStatus.CONFIRMED, tx_hash="0x01")
        adapter.reconcile(operation, receipt)
        adapter.reconcile(operation, receipt)

        assert kernel.registry.get(bound) == before
        advanced = [
            r for r in captured_logs()
            if r["message"] == "stage_advanced" and r.get("to_stage") == 4
        ]
        assert len(advanced) == 1

    def test_reverted_receipt_is_ignored_by_reconcile(self, kernel, bound):
        operation = _fee_operation(bound)
        kernel.adapter.reconcile(
            operation, LedgerReceipt(operation.key, ReceiptStatus.REVERTED, reason="nope")
        )
        assert kernel.registry.get(bound).current_stage is Stage.SELLER_APPROVED

    def test_conflicting_writer_surfaces_stale_stage(self, kernel, submitted):
        # Application is at stage 1; a stage 3 -> 4 confirmation cannot apply.
        operation = _fee_operation(submitted)
        with pytest.raises(StaleStageError):
            kernel.adapter.reconcile(
                operation, LedgerReceipt(operation.key, ReceiptStatus.CONFIRMED)
            )


class TestReverted:
    def test_revert_leaves_registry_unchanged(self, kernel, ledger, bound):
        ledger.revert(f"{bound}:4", "insufficient allowance")
        before = kernel.registry.get(bound)
        outcome = kernel.adapter.resolve(kernel.adapter.submit(_fee_operation(bound)), 1.0)
        assert outcome.status is LedgerOutcomeStatus.REVERTED
        assert outcome.reason == "insufficient allowance"
        assert kernel.registry.get(bound) == before
        assert kernel.transactions.history(BUYER)[0].status is TransactionStatus.FAILED

    def test_cancelled_future_counts_as_revert(self, kernel, ledger, bound):
        key = f"{bound}:4"
        ledger.hold(key)
        pending = kernel.adapter.submit(_fee_operation(bound))
        pending.future.cancel()
        outcome = kernel.adapter.resolve(pending, 1.0)
        assert outcome.status is LedgerOutcomeStatus.REVERTED
        assert outcome.reason == "cancelled"
        assert kernel.registry.get(bound).current_stage is Stage.SELLER_APPROVED

    def test_raising_client_releases_the_key(self, kernel, bound):
        class BrokenClient(FakeLedgerClient):
            def pay_issuance_fee(self, operation):
                raise ConnectionError("refused")

        adapter = LedgerSyncAdapter(
            BrokenClient(), kernel.registry, kernel.voting, kernel.transactions
        )
        with pytest.raises(ConnectionError):
            adapter.submit(_fee_operation(bound))
        assert not adapter.is_pending(f"{bound}:4")
        assert kernel.transactions.history(BUYER)[0].status is TransactionStatus.FAILED
        assert kernel.registry.get(bound).current_stage is Stage.SELLER_APPROVED


class TestPendingAndTimeout:
    def test_second_submit_of_same_key_refused(self, kernel, ledger, bound):
        key = f"{bound}:4"
        ledger.hold(key)
        kernel.adapter.submit(_fee_operation(bound))
        with pytest.raises(SubmissionPendingError) as exc_info:
            kernel.adapter.submit(_fee_operation(bound))
        assert exc_info.value.operation_key == key
        assert len([k for k in ledger.keys_submitted() if k == key]) == 1

    def test_timeout_keeps_submission_registered(self, kernel, ledger, bound):
        key = f"{bound}:4"
        ledger.hold(key)
        pending = kernel.adapter.submit(_fee_operation(bound))
        outcome = kernel.adapter.resolve(pending, 0.05)

        assert outcome.status is LedgerOutcomeStatus.TIMED_OUT
        assert outcome.receipt is None
        assert kernel.registry.get(bound).current_stage is Stage.SELLER_APPROVED
        assert [p.key for p in kernel.adapter.unresolved()] == [key]
        assert kernel.adapter.pending_for(bound)[0] is pending

    def test_late_answer_is_reconciled_once(self, kernel, ledger, bound, captured_logs):
        key = f"{bound}:4"
        ledger.hold(key)
        kernel.adapter.resolve(kernel.adapter.submit(_fee_operation(bound)), 0.05)

        ledger.release(key)

        assert kernel.registry.get(bound).current_stage is Stage.FEE_PAID
        assert kernel.adapter.unresolved() == []
        messages = [r["message"] for r in captured_logs()]
        assert "ledger_late_outcome_reconciled" in messages
        assert kernel.transactions.history(BUYER)[0].status is TransactionStatus.SUCCESS

    def test_late_revert_changes_nothing(self, kernel, ledger, bound):
        key = f"{bound}:4"
        ledger.hold(key)
        kernel.adapter.resolve(kernel.adapter.submit(_fee_operation(bound)), 0.05)
        ledger.release(key, confirmed=False, reason="expired")
        assert kernel.registry.get(bound).current_stage is Stage.SELLER_APPROVED
        assert not kernel.adapter.is_pending(key)


class TestQuery:
    def test_unknown_outcome_returns_none(self, kernel, ledger, bound):
        key = f"{bound}:4"
        ledger.hold(key)
        kernel.adapter.resolve(kernel.adapter.submit(_fee_operation(bound)), 0.05)
        assert kernel.adapter.query(key) is None
        assert kernel.adapter.is_pending(key)

    def test_out_of_band_answer_for_pending_key(self, kernel, ledger, bound):
        key = f"{bound}:4"
        ledger.hold(key)
        kernel.adapter.resolve(kernel.adapter.submit(_fee_operation(bound)), 0.05)
        ledger.settle_out_of_band(key)

        outcome = kernel.adapter.query(key)
        assert outcome.status is LedgerOutcomeStatus.CONFIRMED
        assert kernel.registry.get(bound).current_stage is Stage.FEE_PAID
        assert not kernel.adapter.is_pending(key)

    def test_query_unregistered_key_needs_operation(self, kernel, ledger, bound):
        key = f"{bound}:4"
        ledger.settle_out_of_band(key)
        with pytest.raises(ValueError):
            kernel.adapter.query(key)
        outcome = kernel.adapter.query(key, _fee_operation(bound))
        assert outcome.status is LedgerOutcomeStatus.CONFIRMED
        assert kernel.registry.get(bound).current_stage is Stage.FEE_PAID


class TestTransportFailure:
    def test_failed_future_is_an_unknown_outcome(self, kernel, ledger, bound, captured_logs):
        key = f"{bound}:4"
        ledger.hold(key)
        pending = kernel.adapter.submit(_fee_operation(bound))
        ledger.fail(key, ConnectionError("rpc down"))

        outcome = kernel.adapter.resolve(pending, 1.0)

        assert outcome.status is LedgerOutcomeStatus.TIMED_OUT
        assert outcome.error == "rpc down"
        assert kernel.registry.get(bound).current_stage is Stage.SELLER_APPROVED
        assert kernel.adapter.is_pending(key)
        assert kernel.transactions.history(BUYER)[0].status is TransactionStatus.PENDING
        assert "ledger_outcome_unknown" in [r["message"] for r in captured_logs()]

    def test_landed_operation_found_by_query_after_transport_failure(
        self, kernel, ledger, bound
    ):
        key = f"{bound}:4"
        ledger.hold(key)
        pending = kernel.adapter.submit(_fee_operation(bound))
        ledger.fail(key, ConnectionError("rpc down"))
        kernel.adapter.resolve(pending, 1.0)

        ledger.settle_out_of_band(key)
        outcome = kernel.adapter.query(key)

        assert outcome.status is LedgerOutcomeStatus.CONFIRMED
        assert kernel.registry.get(bound).current_stage is Stage.FEE_PAID
        assert kernel.transactions.history(BUYER)[0].status is TransactionStatus.SUCCESS

    def test_failure_after_timeout_keeps_submission_open(self, kernel, ledger, bound):
        key = f"{bound}:4"
        ledger.hold(key)
        kernel.adapter.resolve(kernel.adapter.submit(_fee_operation(bound)), 0.05)
        ledger.fail(key, ConnectionError("socket closed"))

        assert kernel.adapter.is_pending(key)
        assert kernel.registry.get(bound).current_stage is Stage.SELLER_APPROVED
        assert kernel.transactions.history(BUYER)[0].status is TransactionStatus.PENDING


class TestAbandon:
    def test_unregistered_key_returns_none(self, kernel, bound):
        assert kernel.adapter.abandon(f"{bound}:4") is None

    def test_waiting_submission_cannot_be_abandoned(self, kernel, ledger, bound):
        key = f"{bound}:4"
        ledger.hold(key)
        kernel.adapter.submit(_fee_operation(bound))
        with pytest.raises(SubmissionPendingError):
            kernel.adapter.abandon(key)
        assert kernel.adapter.is_pending(key)

    def test_abandoned_key_can_be_resubmitted(self, kernel, ledger, bound):
        key = f"{bound}:4"
        ledger.hold(key)
        kernel.adapter.resolve(kernel.adapter.submit(_fee_operation(bound)), 0.05)

        abandoned = kernel.adapter.abandon(key)

        assert abandoned.abandoned
        assert not kernel.adapter.is_pending(key)
        outcome = kernel.adapter.resolve(kernel.adapter.submit(_fee_operation(bound)), 1.0)
        assert outcome.status is LedgerOutcomeStatus.CONFIRMED
        assert kernel.registry.get(bound).current_stage is Stage.FEE_PAID

    def test_late_answer_on_abandoned_submission_applied_once(
        self, kernel, ledger, bound, captured_logs
    ):
        key = f"{bound}:4"
        ledger.hold(key)
        kernel.adapter.resolve(kernel.adapter.submit(_fee_operation(bound)), 0.05)
        kernel.adapter.abandon(key)

        ledger.release(key)

        assert kernel.registry.get(bound).current_stage is Stage.FEE_PAID
        records = captured_logs()
        advanced = [
            r for r in records
            if r["message"] == "stage_advanced" and r.get("to_stage") == 4
        ]
        assert len(advanced) == 1
        late = [r for r in records if r["message"] == "ledger_late_outcome_reconciled"]
        assert late and late[0]["abandoned"] is True
        assert kernel.transactions.history(BUYER)[0].status is TransactionStatus.SUCCESS

    def test_late_answer_after_retry_confirmed_is_noop(self, kernel, ledger, bound):
        key = f"{bound}:4"
        ledger.hold(key)
        kernel.adapter.resolve(kernel.adapter.submit(_fee_operation(bound)), 0.05)
        kernel.adapter.abandon(key)
        kernel.adapter.resolve(kernel.adapter.submit(_fee_operation(bound)), 1.0)
        before = kernel.registry.get(bound)

        ledger.release(key)

        assert kernel.registry.get(bound) == before
        statuses = [t.status for t in kernel.transactions.history(BUYER)[:2]]
        assert statuses == [TransactionStatus.SUCCESS, TransactionStatus.SUCCESS]


class TestTerminalRecordOnApplyFailure:
    def test_record_resolved_when_reconcile_loses_race(self, kernel, ledger, bound, monkeypatch):
        key = f"{bound}:4"
        ledger.hold(key)
        kernel.adapter.resolve(kernel.adapter.submit(_fee_operation(bound)), 0.05)
        ledger.settle_out_of_band(key)

        def lose_race(operation, receipt):
            raise StaleStageError(bound, int(Stage.SELLER_APPROVED), int(Stage.TERMINATED))

        monkeypatch.setattr(kernel.adapter, "reconcile", lose_race)
        with pytest.raises(StaleStageError):
            kernel.adapter.query(key)

        assert not kernel.adapter.is_pending(key)
        latest = kernel.transactions.history(BUYER)[0]
        assert latest.status is TransactionStatus.SUCCESS
        assert latest.tx_hash is not None
