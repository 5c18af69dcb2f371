from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from services.settlement_service.currency import CurrencyManager, ExchangeRateInput, get_libyan_exchange_rates
from services.settlement_service.escrow import EscrowManager
from services.settlement_service.installments import (
    InstallmentManager,
    add_months,
    calculate_next_payment_date,
    split_amount,
)
from services.settlement_service.invoices import InvoiceManager, generate_invoice_number
from services.settlement_service.scheduler import PaymentScheduler

pytestmark = pytest.mark.integration

NOW = datetime(2026, 1, 31, 9, 0, 0)


def assert_balanced(escrow):
    assert Decimal(escrow.held_amount) + Decimal(escrow.released_amount) == Decimal(escrow.total_amount)


class TestEscrow:
    async def test_partial_then_full_release(self, db):
        escrow = await EscrowManager.create_escrow_account(db, "order-1", "buyer", "seller", Decimal("500"), "LYD", now=NOW)
        assert escrow.status == "holding"
        assert escrow.auto_release_date == NOW + timedelta(days=30)

        assert await EscrowManager.release_escrow_funds(db, escrow.id, Decimal("200"), "First milestone")
        escrow = await EscrowManager.check_escrow_status(db, escrow.id, NOW)
        assert escrow.held_amount == Decimal("300.00")
        assert escrow.status == "holding"
        assert_balanced(escrow)

        assert await EscrowManager.release_escrow_funds(db, escrow.id, Decimal("300"), "Delivered")
        escrow = await EscrowManager.check_escrow_status(db, escrow.id, NOW)
        assert escrow.status == "released"
        assert escrow.held_amount == 0
        assert_balanced(escrow)

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), Decimal("500.01")])
    async def test_invalid_release_changes_nothing(self, db, amount):
        escrow = await EscrowManager.create_escrow_account(db, "order-1", "buyer", "seller", Decimal("500"), "LYD", now=NOW)
        assert not await EscrowManager.release_escrow_funds(db, escrow.id, amount, "bad")
        escrow = await EscrowManager.check_escrow_status(db, escrow.id, NOW)
        assert escrow.held_amount == Decimal("500.00")
        assert escrow.released_amount == 0

    async def test_released_account_rejects_more(self, db):
        escrow = await EscrowManager.create_escrow_account(db, "order-1", "buyer", "seller", Decimal("100"), "LYD", now=NOW)
        assert await EscrowManager.release_escrow_funds(db, escrow.id, Decimal("100"), "all")
        assert not await EscrowManager.release_escrow_funds(db, escrow.id, Decimal("1"), "more")

    async def test_unknown_account(self, db):
        assert not await EscrowManager.release_escrow_funds(db, "missing", Decimal("1"), "x")
        assert await EscrowManager.check_escrow_status(db, "missing") is None

    async def test_auto_release_after_holding_period(self, db):
        escrow = await EscrowManager.create_escrow_account(db, "order-1", "buyer", "seller", Decimal("500"), "LYD", now=NOW)
        await EscrowManager.release_escrow_funds(db, escrow.id, Decimal("100"), "milestone")

        assert await EscrowManager.auto_release_due(db, NOW + timedelta(days=29)) == 0
        assert await EscrowManager.auto_release_due(db, NOW + timedelta(days=30)) == 1

        escrow = await EscrowManager.check_escrow_status(db, escrow.id, NOW + timedelta(days=31))
        assert escrow.status == "released"
        assert escrow.released_amount == Decimal("500.00")
        assert_balanced(escrow)

    async def test_refund_closes_holding_account(self, db):
        escrow = await EscrowManager.create_escrow_account(db, "order-1", "buyer", "seller", Decimal("500"), "LYD", now=NOW)
        refunded = await EscrowManager.refund_escrow(db, "order-1")
        await db.commit()
        assert refunded.id == escrow.id
        assert refunded.status == "refunded"
        assert_balanced(refunded)
        assert not await EscrowManager.release_escrow_funds(db, escrow.id, Decimal("1"), "late")


class TestInstallmentMath:
    def test_month_end_clamping(self):
        assert add_months(datetime(2026, 1, 31), 1) == datetime(2026, 2, 28)
        assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
        assert add_months(datetime(2026, 11, 15), 3) == datetime(2027, 2, 15)

    def test_next_payment_date(self):
        start = datetime(2026, 3, 1)
        assert calculate_next_payment_date(start, "weekly") == datetime(2026, 3, 8)
        assert calculate_next_payment_date(start, "monthly") == datetime(2026, 4, 1)
        assert calculate_next_payment_date(start, "quarterly") == datetime(2026, 6, 1)
        with pytest.raises(ValueError):
            calculate_next_payment_date(start, "daily")

    def test_split_puts_remainder_last(self):
        shares = split_amount(Decimal("100.00"), 3)
        assert shares == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
        assert sum(shares) == Decimal("100.00")


class TestInstallments:
    async def test_plan_schedule_and_interest(self, db):
        plan = await InstallmentManager.create_installment_plan(
            db, "order-1", Decimal("1000"), "LYD", 3, "monthly", Decimal("10"), now=NOW,
        )
        assert plan.status == "active"
        assert plan.total_amount == Decimal("1000.00")
        assert [i.amount for i in plan.installments] == [Decimal("366.66"), Decimal("366.66"), Decimal("366.68")]
        assert [i.due_date for i in plan.installments] == [NOW, datetime(2026, 2, 28, 9), datetime(2026, 3, 28, 9)]
        assert plan.next_payment_date == NOW

        schedules = await PaymentScheduler.get_due_payments(db, NOW + timedelta(days=60))
        assert len(schedules) == 3
        assert all(s.installment_plan_id == plan.id for s in schedules)

    async def test_plan_completes_after_last_payment(self, db):
        plan = await InstallmentManager.create_installment_plan(db, "order-1", Decimal("300"), "LYD", 3, now=NOW)

        for number in range(1, 4):
            assert await InstallmentManager.process_installment_payment(db, plan.id, f"pay-{number}", NOW)
            plan = await InstallmentManager.get_plan(db, plan.id)
            if number < 3:
                assert plan.status == "active"
                assert plan.next_payment_date == plan.installments[number].due_date

        assert plan.status == "completed"
        assert plan.next_payment_date is None
        assert [i.payment_id for i in plan.installments] == ["pay-1", "pay-2", "pay-3"]
        assert not await InstallmentManager.process_installment_payment(db, plan.id, "pay-4", NOW)
        assert await PaymentScheduler.get_due_payments(db, NOW + timedelta(days=90)) == []

    async def test_overdue_installments_can_still_be_paid(self, db):
        plan = await InstallmentManager.create_installment_plan(db, "order-1", Decimal("200"), "LYD", 2, "weekly", now=NOW)

        assert await InstallmentManager.mark_overdue_installments(db, NOW + timedelta(days=8)) == 2
        plan = await InstallmentManager.get_plan(db, plan.id)
        assert [i.status for i in plan.installments] == ["overdue", "overdue"]

        assert await InstallmentManager.process_installment_payment(db, plan.id, "pay-1", NOW + timedelta(days=8))
        plan = await InstallmentManager.get_plan(db, plan.id)
        assert plan.installments[0].status == "paid"

    async def test_rejects_bad_plans(self, db):
        with pytest.raises(ValueError):
            await InstallmentManager.create_installment_plan(db, "order-1", Decimal("100"), "LYD", 0)
        with pytest.raises(ValueError):
            await InstallmentManager.create_installment_plan(db, "order-1", Decimal("100"), "LYD", 2, "daily")


class TestCurrency:
    async def test_same_currency_is_identity(self, db):
        assert await CurrencyManager.get_exchange_rate(db, "LYD", "LYD") == Decimal("1")

    async def test_reference_rates_and_conversion(self, db):
        await CurrencyManager.update_exchange_rates(db, get_libyan_exchange_rates(), now=NOW)
        assert await CurrencyManager.get_exchange_rate(db, "USD", "LYD", now=NOW) == Decimal("4.85")
        assert await CurrencyManager.convert_currency(db, Decimal("100"), "USD", "LYD", now=NOW) == Decimal("485.00")
        assert await CurrencyManager.get_exchange_rate(db, "GBP", "LYD", now=NOW) is None
        assert await CurrencyManager.convert_currency(db, Decimal("100"), "GBP", "LYD", now=NOW) is None

    async def test_rates_expire_after_a_day(self, db):
        await CurrencyManager.update_exchange_rates(db, get_libyan_exchange_rates(), now=NOW)
        assert await CurrencyManager.get_exchange_rate(db, "USD", "LYD", now=NOW + timedelta(hours=23)) is not None
        assert await CurrencyManager.get_exchange_rate(db, "USD", "LYD", now=NOW + timedelta(hours=24)) is None

    async def test_update_replaces_active_rate(self, db):
        await CurrencyManager.update_exchange_rates(db, get_libyan_exchange_rates(), now=NOW)
        [newer] = await CurrencyManager.update_exchange_rates(
            db, [ExchangeRateInput("USD", "LYD", Decimal("4.90"), "custom")], now=NOW + timedelta(hours=1),
        )
        assert newer.is_active
        assert await CurrencyManager.get_exchange_rate(db, "USD", "LYD", now=NOW + timedelta(hours=2)) == Decimal("4.90")


class TestInvoices:
    def test_number_format(self):
        number = generate_invoice_number(datetime(2026, 3, 5))
        assert number.startswith("INV-202603-")
        assert len(number) == len("INV-202603-0000")

    async def test_generate_and_pay(self, db):
        invoice = await InvoiceManager.generate_invoice(
            db, "order-1", "buyer", "seller", Decimal("1000"), Decimal("50"), Decimal("100"), "LYD", now=NOW,
        )
        assert invoice.total_amount == Decimal("950.00")
        assert invoice.status == "draft"
        assert invoice.due_date == NOW + timedelta(days=30)

        assert await InvoiceManager.mark_invoice_as_paid(db, invoice.id, "pay-1", NOW)
        invoice = await InvoiceManager.get_invoice_details(db, invoice.id)
        assert invoice.status == "paid"
        assert invoice.payment_id == "pay-1"
        assert not await InvoiceManager.mark_invoice_as_paid(db, invoice.id, "pay-2", NOW)
        assert not await InvoiceManager.mark_invoice_as_paid(db, "missing", "pay-2", NOW)

    async def test_numbers_are_unique(self, db):
        numbers = set()
        for _ in range(20):
            invoice = await InvoiceManager.generate_invoice(db, "order-1", "buyer", "seller", Decimal("10"), now=NOW)
            numbers.add(invoice.invoice_number)
        assert len(numbers) == 20


class TestScheduler:
    async def test_due_payments_and_processing(self, db):
        due = await PaymentScheduler.schedule_payment(db, "order-1", Decimal("50"), "LYD", NOW)
        await PaymentScheduler.schedule_payment(db, "order-2", Decimal("70"), "LYD", NOW + timedelta(days=10))

        assert [s.id for s in await PaymentScheduler.get_due_payments(db, NOW)] == [due.id]
        assert await PaymentScheduler.process_scheduled_payment(db, due.id, "pay-1", NOW)
        assert not await PaymentScheduler.process_scheduled_payment(db, due.id, "pay-2", NOW)
        assert await PaymentScheduler.get_due_payments(db, NOW) == []

    async def test_reminders_are_sent_once(self, db):
        await PaymentScheduler.schedule_payment(db, "order-1", Decimal("50"), "LYD", NOW + timedelta(days=2))
        await PaymentScheduler.schedule_payment(db, "order-2", Decimal("70"), "LYD", NOW + timedelta(days=10))

        assert await PaymentScheduler.send_payment_reminders(db, NOW) == 1
        assert await PaymentScheduler.send_payment_reminders(db, NOW) == 0
