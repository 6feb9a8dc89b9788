"""
Two-tier approval of receipts and expenses, and the account movements their
final approval produces.
"""
import pytest

from engine.accounts import BANK, CASH
from engine.approval_workflow import ApprovalStatus
from engine.errors import (
    InvalidStateError, OverpaymentError, PermissionDeniedError, ValidationError
)
from engine.events import EXPENSE_APPROVED, RECEIPT_APPROVED
from engine.sale_ledger import SaleStatus
from engine.state_machine import InvalidTransitionError
from tests.conftest import ACCOUNTS, ADMIN, HOF, approve_through_both_gates, approved_receipt


@pytest.fixture
def published(engine):
    received = []

    async def capture(payload):
        received.append(payload)

    engine.events.subscribe(RECEIPT_APPROVED, capture)
    engine.events.subscribe(EXPENSE_APPROVED, capture)
    return received


class TestReceiptApprovalOrder:
    """Draft -> Pending Accounts -> Pending HOF -> Approved"""

    async def test_sale_untouched_until_final_approval(self, engine, sale):
        receipt = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 100000}, ADMIN)
        assert receipt["approval_status"] == ApprovalStatus.DRAFT
        assert receipt["receipt_number"].startswith("RCP-")

        await engine.receipts.submit(receipt["_id"], ADMIN)
        receipt = await engine.receipts.approve(receipt["_id"], ACCOUNTS)
        assert receipt["approval_status"] == ApprovalStatus.PENDING_HOF

        stored = await engine.sales.get_sale(sale["_id"])
        assert stored["paid_amount"] == 0.0

        receipt = await engine.receipts.approve(receipt["_id"], HOF)
        assert receipt["approval_status"] == ApprovalStatus.APPROVED
        assert receipt["posted_to_ledger"] is True
        assert receipt["allocations"] == [{"stage": "Booking", "amount": 100000.0}]

        stored = await engine.sales.get_sale(sale["_id"])
        assert stored["paid_amount"] == 100000.0
        assert stored["due_amount"] == 900000.0

    async def test_history_records_each_step(self, engine, sale):
        receipt = await approved_receipt(engine, sale, 5000)
        steps = [(h["action"], h["approver_role"], h["to_state"]) for h in receipt["approval_history"]]
        assert steps == [
            ("Submitted", "Admin", ApprovalStatus.PENDING_ACCOUNTS),
            ("Approved", "AccountManager", ApprovalStatus.PENDING_HOF),
            ("Approved", "HOF", ApprovalStatus.APPROVED),
        ]

    async def test_admin_can_act_at_hof_gate(self, engine, sale):
        receipt = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 5000}, ADMIN)
        await engine.receipts.submit(receipt["_id"], ADMIN)
        await engine.receipts.approve(receipt["_id"], ACCOUNTS)
        receipt = await engine.receipts.approve(receipt["_id"], ADMIN)
        assert receipt["approval_status"] == ApprovalStatus.APPROVED

    async def test_admin_can_act_at_accounts_gate(self, engine, sale):
        receipt = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 5000}, ACCOUNTS)
        await engine.receipts.submit(receipt["_id"], ACCOUNTS)
        receipt = await engine.receipts.approve(receipt["_id"], ADMIN, "Verified")
        assert receipt["approval_status"] == ApprovalStatus.PENDING_HOF
        assert receipt["approval_history"][-1]["approval_level"] == "Accounts Manager"
        assert receipt["approval_history"][-1]["approver_role"] == "Admin"


class TestGateRoles:
    """Who may act at which gate"""

    async def test_hof_cannot_take_accounts_gate(self, engine, sale):
        receipt = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 5000}, ADMIN)
        await engine.receipts.submit(receipt["_id"], ADMIN)
        with pytest.raises(PermissionDeniedError):
            await engine.receipts.approve(receipt["_id"], HOF)

        receipt = await engine.receipts.get_receipt(receipt["_id"])
        assert receipt["approval_status"] == ApprovalStatus.PENDING_ACCOUNTS

    async def test_accounts_cannot_take_hof_gate(self, engine, sale):
        receipt = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 5000}, ADMIN)
        await engine.receipts.submit(receipt["_id"], ADMIN)
        await engine.receipts.approve(receipt["_id"], ACCOUNTS)
        with pytest.raises(PermissionDeniedError):
            await engine.receipts.approve(receipt["_id"], ACCOUNTS)

    async def test_only_creator_or_admin_submits(self, engine, sale):
        receipt = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 5000}, ACCOUNTS)
        with pytest.raises(PermissionDeniedError):
            await engine.receipts.submit(receipt["_id"], HOF)
        submitted = await engine.receipts.submit(receipt["_id"], ACCOUNTS)
        assert submitted["approval_status"] == ApprovalStatus.PENDING_ACCOUNTS

    async def test_approval_queue_by_role(self, engine, sale):
        first = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 1000}, ADMIN)
        second = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 2000}, ADMIN)
        await engine.receipts.submit(first["_id"], ADMIN)
        await engine.receipts.submit(second["_id"], ADMIN)
        await engine.receipts.approve(second["_id"], ACCOUNTS)

        assert [r["_id"] for r in await engine.receipts.approval_queue(ACCOUNTS)] == [first["_id"]]
        assert [r["_id"] for r in await engine.receipts.approval_queue(HOF)] == [second["_id"]]
        assert len(await engine.receipts.approval_queue(ADMIN)) == 2


class TestRejectionAndTerminalStates:
    """Rejections, repeats and edits"""

    async def test_reject_needs_remarks(self, engine, sale):
        receipt = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 5000}, ADMIN)
        await engine.receipts.submit(receipt["_id"], ADMIN)
        with pytest.raises(ValidationError):
            await engine.receipts.reject(receipt["_id"], ACCOUNTS, "  ")

        rejected = await engine.receipts.reject(receipt["_id"], ACCOUNTS, "Cheque bounced")
        assert rejected["approval_status"] == ApprovalStatus.REJECTED
        assert rejected["rejection_reason"] == "Cheque bounced"

        stored = await engine.sales.get_sale(sale["_id"])
        assert stored["paid_amount"] == 0.0

    async def test_approved_receipt_cannot_be_approved_again(self, engine, sale):
        receipt = await approved_receipt(engine, sale, 5000)
        with pytest.raises(InvalidTransitionError):
            await engine.receipts.approve(receipt["_id"], HOF)

        stored = await engine.sales.get_sale(sale["_id"])
        assert stored["paid_amount"] == 5000.0

    async def test_draft_cannot_be_approved(self, engine, sale):
        receipt = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 5000}, ADMIN)
        with pytest.raises(InvalidStateError):
            await engine.receipts.approve(receipt["_id"], ACCOUNTS)

    async def test_only_drafts_are_edited(self, engine, sale):
        receipt = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 5000}, ADMIN)
        updated = await engine.receipts.update_receipt(receipt["_id"], {"amount": 6000}, ADMIN)
        assert updated["amount"] == 6000.0

        await engine.receipts.submit(receipt["_id"], ADMIN)
        with pytest.raises(InvalidStateError):
            await engine.receipts.update_receipt(receipt["_id"], {"amount": 7000}, ADMIN)
        with pytest.raises(InvalidStateError):
            await engine.receipts.delete_receipt(receipt["_id"], ADMIN)

    async def test_deleted_draft_leaves_listing(self, engine, sale):
        receipt = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 5000}, ADMIN)
        await engine.receipts.delete_receipt(receipt["_id"], ADMIN)
        items, total = await engine.receipts.list_receipts(sale_id=sale["_id"])
        assert (items, total) == ([], 0)


class TestReceiptValidation:
    """Checks made before a receipt enters the workflow"""

    async def test_cheque_needs_instrument_details(self, engine, sale):
        with pytest.raises(ValidationError):
            await engine.receipts.create_receipt(
                {"sale_id": sale["_id"], "amount": 5000, "method": "Cheque"}, ADMIN
            )
        receipt = await engine.receipts.create_receipt(
            {"sale_id": sale["_id"], "amount": 5000, "method": "Cheque",
             "instrument_details": {"bank_name": "City Bank", "cheque_number": "000123"}},
            ADMIN
        )
        assert receipt["instrument_details"]["cheque_number"] == "000123"

    async def test_amount_above_due_refused_at_creation(self, engine, sale):
        with pytest.raises(OverpaymentError):
            await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 1_000_000.01}, ADMIN)

    async def test_client_must_match_sale(self, engine, sale):
        other = await engine.clients.create_client({"name": "Karim", "phone": "+8801800000000"}, ADMIN["user_id"])
        with pytest.raises(ValidationError):
            await engine.receipts.create_receipt(
                {"sale_id": sale["_id"], "client_id": other["_id"], "amount": 5000}, ADMIN
            )

    async def test_final_approval_rechecks_due(self, engine, sale):
        first = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 600000}, ADMIN)
        second = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 600000}, ADMIN)
        await engine.receipts.submit(second["_id"], ADMIN)
        await engine.receipts.approve(second["_id"], ACCOUNTS)
        await approve_through_both_gates(engine.receipts, first["_id"])

        with pytest.raises(OverpaymentError):
            await engine.receipts.approve(second["_id"], HOF)

        second = await engine.receipts.get_receipt(second["_id"])
        assert second["approval_status"] == ApprovalStatus.PENDING_HOF

    async def test_cancelled_sale_refuses_final_approval(self, engine, sale):
        receipt = await engine.receipts.create_receipt({"sale_id": sale["_id"], "amount": 5000}, ADMIN)
        await engine.receipts.submit(receipt["_id"], ADMIN)
        await engine.receipts.approve(receipt["_id"], ACCOUNTS)
        await engine.cancellations.request_cancellation(sale["_id"], "Client withdrew", ADMIN["user_id"])

        with pytest.raises(InvalidStateError):
            await engine.receipts.approve(receipt["_id"], HOF)
        stored = await engine.sales.get_sale(sale["_id"])
        assert stored["status"] == SaleStatus.CANCELLED
        assert stored["paid_amount"] == 0.0


class TestAccountMovements:
    """Credits and debits on final approval"""

    async def test_receipt_credits_deposit_account(self, engine, sale, bank_account, published):
        receipt = await approved_receipt(
            engine, sale, 100000,
            method="Bank Transfer", account_type=BANK, account_id=bank_account["_id"]
        )
        account = await engine.accounts.get_account(BANK, bank_account["_id"])
        assert account["current_balance"] == 150000.0

        movements = await engine.accounts.movements(BANK, bank_account["_id"])
        assert [(m["direction"], m["amount"], m["balance_after"]) for m in movements] == [
            ("credit", 100000.0, 150000.0)
        ]
        assert movements[0]["reference_id"] == receipt["_id"]

        assert len(published) == 1
        assert published[0]["receipt_number"] == receipt["receipt_number"]
        assert published[0]["due_amount"] == 900000.0

    async def test_expense_debits_paying_account(self, engine, published):
        cash = await engine.accounts.create_cash_account({"name": "Site Office", "opening_balance": 20000}, ADMIN["user_id"])
        category = await engine.expenses.create_category("Survey", ADMIN["user_id"])
        expense = await engine.expenses.create_expense(
            {"category_id": category["_id"], "amount": 7500, "payment_method": "Cash",
             "account_type": CASH, "account_id": cash["_id"], "vendor": "Land Surveyors Ltd"},
            ADMIN
        )
        assert expense["status"] == ApprovalStatus.DRAFT

        expense = await approve_through_both_gates(engine.expenses, expense["_id"])
        assert expense["status"] == ApprovalStatus.APPROVED

        account = await engine.accounts.get_account(CASH, cash["_id"])
        assert account["current_balance"] == 12500.0
        assert published[0]["account_balance"] == 12500.0

        stats = await engine.expenses.expense_stats()
        assert stats["total_expenses"] == 1
        assert stats["total_amount"] == 7500.0
        assert stats["by_category"][0]["category_name"] == "Survey"

    async def test_inactive_account_blocks_final_approval(self, engine, sale, bank_account):
        receipt = await engine.receipts.create_receipt(
            {"sale_id": sale["_id"], "amount": 5000, "account_type": BANK, "account_id": bank_account["_id"]},
            ADMIN
        )
        await engine.receipts.submit(receipt["_id"], ADMIN)
        await engine.receipts.approve(receipt["_id"], ACCOUNTS)
        await engine.accounts.deactivate(BANK, bank_account["_id"], ADMIN["user_id"])

        with pytest.raises(InvalidStateError):
            await engine.receipts.approve(receipt["_id"], HOF)

    async def test_category_in_use_cannot_be_deactivated(self, engine):
        category = await engine.expenses.create_category("Legal", ADMIN["user_id"])
        await engine.expenses.create_expense({"category_id": category["_id"], "amount": 100}, ADMIN)
        with pytest.raises(InvalidStateError):
            await engine.expenses.deactivate_category(category["_id"], ADMIN["user_id"])
