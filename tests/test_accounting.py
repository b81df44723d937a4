"""Sales, expenses, journal entries and the ledger reports."""
from datetime import date
from decimal import Decimal

import pytest

import accounting
from errors import ValidationError, transaction
from models import Expense, LedgerTransaction, Sale, Vendor, db


@pytest.fixture
def vendor(app, admin):
    vendor = Vendor(name='Fuel Station', user_id=admin.id)
    db.session.add(vendor)
    db.session.commit()
    return vendor


@pytest.fixture
def books(admin, customer, vendor, accounts):
    """A 70.00 cash sale on June 1st and a 20.00 cash fuel expense on June 5th."""
    with transaction('Seed books', admin):
        accounting.record_sale(admin, customer_id=customer.id, sale_date=date(2025, 6, 1),
                               item_description='Rent 7 days', amount='70', payment_type='cash',
                               credit_account_id=accounts['AT Rental'].id)
        accounting.record_expense(admin, vendor_id=vendor.id, expense_date=date(2025, 6, 5),
                                  item_description='Fuel', amount='20', payment_type='cash',
                                  expense_account_id=accounts['Fuel Expense'].id)


def row(rows, name):
    return next(r for r in rows if r['name'] == name)


class TestRecordSale:
    def test_sale_numbers_and_ledger_entry(self, admin, customer, accounts):
        with transaction('Record sales', admin):
            first = accounting.record_sale(
                admin, customer_id=customer.id, sale_date=date(2025, 6, 1), item_description='Helmet',
                amount='5', payment_type='cash', credit_account_id=accounts['Helmet Income'].id)
            second = accounting.record_sale(
                admin, customer_id=customer.id, sale_date=date(2025, 6, 1), item_description='Repair',
                amount='15.50', payment_type='bank', credit_account_id=accounts['Repair Income'].id,
                debit_target_account_id=accounts['Bank Account (ABA)'].id)

        assert (first.sale_no, second.sale_no) == ('SALE-0001', 'SALE-0002')
        assert second.memo_ref_no == 'SALE-0002'
        entry = LedgerTransaction.query.filter_by(sale_id=second.id).one()
        assert entry.debit_account_id == accounts['Bank Account (ABA)'].id
        assert entry.credit_account_id == accounts['Repair Income'].id
        assert entry.amount == Decimal('15.50')
        assert entry.item_description == 'Sale to Jane Doe - Repair'

    def test_credit_account_must_be_revenue_or_liability(self, admin, customer, accounts):
        with pytest.raises(ValidationError):
            with transaction('Record sale', admin):
                accounting.record_sale(
                    admin, customer_id=customer.id, sale_date=date(2025, 6, 1), item_description='Oops',
                    amount='5', payment_type='cash', credit_account_id=accounts['Fuel Expense'].id)

        assert Sale.query.count() == 0
        assert LedgerTransaction.query.count() == 0


class TestRecordExpense:
    def test_expense_debits_expense_account(self, admin, vendor, accounts):
        with transaction('Record expense', admin):
            expense = accounting.record_expense(
                admin, vendor_id=vendor.id, expense_date=date(2025, 6, 2), item_description='Oil change',
                amount='12', payment_type='cash', expense_account_id=accounts['Repairs & Maintenance'].id)

        assert expense.expense_no == 'EXP-0001'
        entry = LedgerTransaction.query.filter_by(expense_id=expense.id).one()
        assert entry.debit_account_id == accounts['Repairs & Maintenance'].id
        assert entry.credit_account_id == accounts['Cash'].id
        assert Expense.query.count() == 1


class TestJournalEntry:
    def test_accounts_must_differ_and_amount_be_positive(self, admin, accounts):
        with pytest.raises(ValidationError) as exc:
            accounting.record_journal_entry(
                admin, transaction_date=date(2025, 6, 1), item_description='Transfer',
                debit_account_id=accounts['Cash'].id, credit_account_id=accounts['Cash'].id, amount='0')

        assert set(exc.value.errors) == {'credit_account_id', 'amount'}

    def test_transaction_numbers_skip_taken_ones(self, admin, accounts):
        with transaction('Journal', admin):
            accounting.record_journal_entry(
                admin, transaction_date=date(2025, 6, 1), item_description='Owner investment',
                debit_account_id=accounts['Cash'].id, credit_account_id=accounts["Owner's Equity"].id,
                amount='500')
            db.session.add(LedgerTransaction(
                transaction_no='GL-003', transaction_date=date(2025, 6, 1), item_description='Imported',
                debit_account_id=accounts['Cash'].id, credit_account_id=accounts["Owner's Equity"].id,
                amount=Decimal('1')))
            db.session.flush()
            entry = accounting.record_journal_entry(
                admin, transaction_date=date(2025, 6, 2), item_description='Deposit to bank',
                debit_account_id=accounts['Bank Account (ABA)'].id, credit_account_id=accounts['Cash'].id,
                amount='100')

        assert entry.transaction_no == 'GL-004'


class TestReports:
    def test_trial_balance_balances(self, books):
        report = accounting.trial_balance(date(2025, 6, 30))

        assert row(report['rows'], 'Cash')['debit_balance'] == Decimal('50.00')
        assert row(report['rows'], 'AT Rental')['credit_balance'] == Decimal('70.00')
        assert row(report['rows'], 'Fuel Expense')['debit_balance'] == Decimal('20.00')
        assert report['total_debit'] == report['total_credit'] == Decimal('70.00')

    def test_trial_balance_respects_as_of_date(self, books):
        report = accounting.trial_balance(date(2025, 6, 3))

        assert row(report['rows'], 'Cash')['debit_balance'] == Decimal('70.00')
        assert row(report['rows'], 'Fuel Expense')['debit_balance'] == Decimal('0.00')

    def test_profit_and_loss(self, books):
        report = accounting.profit_and_loss(date(2025, 6, 1), date(2025, 6, 30))

        assert report['total_revenue'] == Decimal('70.00')
        assert report['total_expense'] == Decimal('20.00')
        assert report['net_profit_loss'] == Decimal('50.00')
        assert [r['name'] for r in report['revenues']] == ['AT Rental']

    def test_balance_sheet_folds_profit_into_equity(self, books):
        report = accounting.balance_sheet(date(2025, 6, 30), "Owner's Equity")

        assert report['total_assets'] == Decimal('50.00')
        assert row(report['equity'], "Owner's Equity")['balance'] == Decimal('50.00')
        assert report['total_assets'] == report['total_liabilities'] + report['total_equity']

    def test_account_ledger_running_balance(self, books, accounts):
        report = accounting.account_ledger(accounts['Cash'].id, date(2025, 6, 3), date(2025, 6, 30))

        assert report['opening_balance'] == Decimal('70.00')
        assert [e['credit'] for e in report['entries']] == [Decimal('20.00')]
        assert report['closing_balance'] == Decimal('50.00')
