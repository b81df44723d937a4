"""
Double-entry bookkeeping: sales, expenses, manual journal entries and the
read-only ledger reports built from them.

Writers only add rows to the open session; the caller owns the transaction
(see ``errors.transaction``), so a rental and its sales commit together.
"""
import logging
from collections import defaultdict
from decimal import Decimal, InvalidOperation

from errors import EntityKind, NotFoundError, ValidationError, find_or_fail
from models import (AccountType, ChartOfAccount, Customer, Expense, LedgerTransaction,
                    Sale, Vendor, db)

logger = logging.getLogger(__name__)

PAYMENT_TYPES = ('cash', 'bank', 'credit')
EXPENSE_PAYMENT_TYPES = ('cash', 'bank')
CASH_ACCOUNT = 'Cash'

SALE_CREDIT_TYPES = (AccountType.REVENUE, AccountType.LIABILITY)
# Accounts whose balance grows on the debit side
DEBIT_NORMAL = (AccountType.ASSET, AccountType.EXPENSE)

ZERO = Decimal('0.00')


def to_decimal(value):
    """Parse a money amount; returns None when it is not a number."""
    if value is None or value == '':
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount.quantize(Decimal('0.01'))


def validate_payments(payments, prefix='payments'):
    """Field map of problems in a list of payment rows; empty when all are fine."""
    errors = {}
    for index, payment in enumerate(payments):
        key = f"{prefix}-{index}"
        position = index + 1
        if not (payment.get('description') or '').strip():
            errors[f"{key}-description"] = f"The description for payment #{position} is required."
        amount = to_decimal(payment.get('amount'))
        if amount is None:
            errors[f"{key}-amount"] = f"The amount for payment #{position} must be a number."
        elif amount < 0:
            errors[f"{key}-amount"] = f"The amount for payment #{position} cannot be negative."
        payment_type = payment.get('payment_type')
        if payment_type not in PAYMENT_TYPES:
            errors[f"{key}-payment_type"] = f"The payment type for payment #{position} is invalid."
        credit = db.session.get(ChartOfAccount, payment.get('credit_account_id') or 0)
        if credit is None:
            errors[f"{key}-credit_account_id"] = f"The credit account for payment #{position} does not exist."
        elif credit.type not in SALE_CREDIT_TYPES:
            errors[f"{key}-credit_account_id"] = (
                f"The credit account for payment #{position} must be a Revenue or Liability account.")
        if payment_type in ('bank', 'credit'):
            target = db.session.get(ChartOfAccount, payment.get('debit_target_account_id') or 0)
            if target is None:
                errors[f"{key}-debit_target_account_id"] = (
                    f"The target bank account for payment #{position} is required for bank or credit payments.")
    return errors


# ---------------- NUMBERING ----------------
def _next_number(model, column, prefix, width):
    last = model.query.order_by(model.id.desc()).first()
    next_id = (last.id if last else 0) + 1
    number = f"{prefix}-{str(next_id).zfill(width)}"
    while model.query.filter(column == number).first() is not None:
        next_id += 1
        number = f"{prefix}-{str(next_id).zfill(width)}"
    return number


def next_transaction_no():
    return _next_number(LedgerTransaction, LedgerTransaction.transaction_no, 'GL', 3)


def _cash_account():
    account = ChartOfAccount.query.filter_by(name=CASH_ACCOUNT).first()
    if account is None:
        raise NotFoundError(EntityKind.ACCOUNT, CASH_ACCOUNT)
    return account


def _post(actor, *, transaction_date, item_description, debit_account, credit_account, amount,
          memo_ref_no=None, sale=None, expense=None):
    entry = LedgerTransaction(
        transaction_no=next_transaction_no(),
        transaction_date=transaction_date,
        item_description=item_description,
        memo_ref_no=memo_ref_no,
        debit_account_id=debit_account.id,
        credit_account_id=credit_account.id,
        amount=amount,
        sale_id=sale.id if sale else None,
        expense_id=expense.id if expense else None,
        user_id=actor.id,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


# ---------------- WRITERS ----------------
def record_sale(actor, *, customer_id, sale_date, item_description, amount, payment_type,
                credit_account_id, debit_target_account_id=None, memo_ref_no=None, rental_id=None):
    """Record a sale and its ledger entry: debit cash/bank, credit revenue."""
    customer = find_or_fail(Customer, customer_id, EntityKind.CUSTOMER)
    credit_account = find_or_fail(ChartOfAccount, credit_account_id, EntityKind.ACCOUNT)
    if credit_account.type not in SALE_CREDIT_TYPES:
        raise ValidationError({'credit_account_id': 'Invalid credit account. Must be Revenue or Liability type.'})
    if payment_type == 'cash':
        debit_account = _cash_account()
    elif payment_type in ('bank', 'credit'):
        debit_account = find_or_fail(ChartOfAccount, debit_target_account_id, EntityKind.ACCOUNT)
    else:
        raise ValidationError({'payment_type': 'Invalid payment type selected.'})

    sale_no = _next_number(Sale, Sale.sale_no, 'SALE', 4)
    sale = Sale(
        sale_no=sale_no,
        sale_date=sale_date,
        customer_id=customer.id,
        rental_id=rental_id,
        item_description=item_description,
        memo_ref_no=memo_ref_no or sale_no,
        amount=to_decimal(amount),
        payment_type=payment_type,
        user_id=actor.id,
    )
    db.session.add(sale)
    db.session.flush()

    _post(
        actor,
        transaction_date=sale_date,
        item_description=f"Sale to {customer.full_name} - {item_description}",
        memo_ref_no=sale.memo_ref_no,
        debit_account=debit_account,
        credit_account=credit_account,
        amount=sale.amount,
        sale=sale,
    )
    logger.info(f"User [ID: {actor.id}] recorded sale {sale.sale_no} ({sale.amount}) for customer [ID: {customer.id}]")
    return sale


def record_expense(actor, *, vendor_id, expense_date, item_description, amount, payment_type,
                   expense_account_id, credit_source_account_id=None, memo_ref_no=None):
    """Record a purchase: debit the expense account, credit cash or bank."""
    vendor = find_or_fail(Vendor, vendor_id, EntityKind.VENDOR)
    expense_account = find_or_fail(ChartOfAccount, expense_account_id, EntityKind.ACCOUNT)
    if expense_account.type is not AccountType.EXPENSE:
        raise ValidationError({'expense_account_id': 'The debit account must be an Expense account.'})
    if payment_type == 'cash':
        credit_account = _cash_account()
    elif payment_type == 'bank':
        credit_account = find_or_fail(ChartOfAccount, credit_source_account_id, EntityKind.ACCOUNT)
    else:
        raise ValidationError({'payment_type': 'Invalid payment type selected.'})

    expense_no = _next_number(Expense, Expense.expense_no, 'EXP', 4)
    expense = Expense(
        expense_no=expense_no,
        expense_date=expense_date,
        vendor_id=vendor.id,
        item_description=item_description,
        memo_ref_no=memo_ref_no or expense_no,
        amount=to_decimal(amount),
        payment_type=payment_type,
        user_id=actor.id,
    )
    db.session.add(expense)
    db.session.flush()

    _post(
        actor,
        transaction_date=expense_date,
        item_description=f"Purchase from {vendor.name} - {item_description}",
        memo_ref_no=expense.memo_ref_no,
        debit_account=expense_account,
        credit_account=credit_account,
        amount=expense.amount,
        expense=expense,
    )
    logger.info(f"User [ID: {actor.id}] recorded expense {expense.expense_no} ({expense.amount})")
    return expense


def record_journal_entry(actor, *, transaction_date, item_description, debit_account_id,
                         credit_account_id, amount, memo_ref_no=None):
    errors = {}
    if debit_account_id == credit_account_id:
        errors['credit_account_id'] = 'The credit account must be different from the debit account.'
    value = to_decimal(amount)
    if value is None or value < Decimal('0.01'):
        errors['amount'] = 'The amount must be at least 0.01.'
    if errors:
        raise ValidationError(errors)
    debit_account = find_or_fail(ChartOfAccount, debit_account_id, EntityKind.ACCOUNT)
    credit_account = find_or_fail(ChartOfAccount, credit_account_id, EntityKind.ACCOUNT)
    entry = _post(
        actor,
        transaction_date=transaction_date,
        item_description=item_description,
        memo_ref_no=memo_ref_no,
        debit_account=debit_account,
        credit_account=credit_account,
        amount=value,
    )
    logger.info(f"User [ID: {actor.id}] posted journal entry {entry.transaction_no}")
    return entry


# ---------------- REPORTS ----------------
def _totals(query):
    debits = defaultdict(lambda: ZERO)
    credits = defaultdict(lambda: ZERO)
    for entry in query:
        debits[entry.debit_account_id] += entry.amount
        credits[entry.credit_account_id] += entry.amount
    return debits, credits


def _balance(account, debits, credits):
    """Balance in the account's normal direction."""
    net = debits[account.id] - credits[account.id]
    return net if account.type in DEBIT_NORMAL else -net


def _row(account, balance):
    return {'id': account.id, 'name': account.name, 'type': account.type.value, 'balance': balance}


def trial_balance(as_of):
    accounts = ChartOfAccount.query.order_by(ChartOfAccount.name).all()
    debits, credits = _totals(LedgerTransaction.query.filter(LedgerTransaction.transaction_date <= as_of))
    rows = []
    for account in accounts:
        net = debits[account.id] - credits[account.id]
        rows.append({
            'id': account.id,
            'name': account.name,
            'type': account.type.value,
            'debit_balance': net if net > 0 else ZERO,
            'credit_balance': -net if net < 0 else ZERO,
        })
    return {
        'as_of': as_of.isoformat(),
        'rows': rows,
        'total_debit': sum((r['debit_balance'] for r in rows), ZERO),
        'total_credit': sum((r['credit_balance'] for r in rows), ZERO),
    }


def profit_and_loss(start, end):
    accounts = ChartOfAccount.query.filter(
        ChartOfAccount.type.in_([AccountType.REVENUE, AccountType.EXPENSE])
    ).order_by(ChartOfAccount.name).all()
    debits, credits = _totals(LedgerTransaction.query.filter(
        LedgerTransaction.transaction_date >= start,
        LedgerTransaction.transaction_date <= end,
    ))
    revenues, expenses = [], []
    for account in accounts:
        balance = _balance(account, debits, credits)
        if balance == 0:
            continue
        target = revenues if account.type is AccountType.REVENUE else expenses
        target.append(_row(account, balance))
    total_revenue = sum((r['balance'] for r in revenues), ZERO)
    total_expense = sum((r['balance'] for r in expenses), ZERO)
    return {
        'start_date': start.isoformat(),
        'end_date': end.isoformat(),
        'revenues': revenues,
        'total_revenue': total_revenue,
        'expenses': expenses,
        'total_expense': total_expense,
        'net_profit_loss': total_revenue - total_expense,
    }


def balance_sheet(as_of, retained_earnings_account):
    """Assets = liabilities + equity, with net profit to date folded into retained earnings."""
    accounts = ChartOfAccount.query.order_by(ChartOfAccount.name).all()
    debits, credits = _totals(LedgerTransaction.query.filter(LedgerTransaction.transaction_date <= as_of))

    net_profit = ZERO
    balances = {}
    for account in accounts:
        balance = _balance(account, debits, credits)
        if account.type is AccountType.REVENUE:
            net_profit += balance
        elif account.type is AccountType.EXPENSE:
            net_profit -= balance
        else:
            balances[account.id] = balance

    retained = next((a for a in accounts if a.name == retained_earnings_account), None)
    if retained is not None and retained.id in balances:
        balances[retained.id] += net_profit
    else:
        logger.warning(f"Retained earnings account '{retained_earnings_account}' missing; net profit not folded in")

    sections = {AccountType.ASSET: [], AccountType.LIABILITY: [], AccountType.EQUITY: []}
    for account in accounts:
        balance = balances.get(account.id)
        if balance is None or balance == 0:
            continue
        sections[account.type].append(_row(account, balance))

    def total(rows):
        return sum((r['balance'] for r in rows), ZERO)

    return {
        'as_of': as_of.isoformat(),
        'assets': sections[AccountType.ASSET],
        'total_assets': total(sections[AccountType.ASSET]),
        'liabilities': sections[AccountType.LIABILITY],
        'total_liabilities': total(sections[AccountType.LIABILITY]),
        'equity': sections[AccountType.EQUITY],
        'total_equity': total(sections[AccountType.EQUITY]),
        'net_profit_loss': net_profit,
    }


def account_ledger(account_id, start, end):
    """One account's entries in a date range with opening and running balances."""
    account = find_or_fail(ChartOfAccount, account_id, EntityKind.ACCOUNT)
    sign = 1 if account.type in DEBIT_NORMAL else -1
    involves = db.or_(LedgerTransaction.debit_account_id == account.id,
                      LedgerTransaction.credit_account_id == account.id)

    def movement(entry):
        delta = ZERO
        if entry.debit_account_id == account.id:
            delta += entry.amount
        if entry.credit_account_id == account.id:
            delta -= entry.amount
        return delta * sign

    opening = sum((movement(e) for e in LedgerTransaction.query.filter(
        involves, LedgerTransaction.transaction_date < start)), ZERO)

    entries = (LedgerTransaction.query
               .filter(involves,
                       LedgerTransaction.transaction_date >= start,
                       LedgerTransaction.transaction_date <= end)
               .order_by(LedgerTransaction.transaction_date, LedgerTransaction.id)
               .all())
    running = opening
    rows = []
    for entry in entries:
        running += movement(entry)
        rows.append({
            'id': entry.id,
            'transaction_no': entry.transaction_no,
            'transaction_date': entry.transaction_date.isoformat(),
            'item_description': entry.item_description,
            'memo_ref_no': entry.memo_ref_no,
            'debit': entry.amount if entry.debit_account_id == account.id else ZERO,
            'credit': entry.amount if entry.credit_account_id == account.id else ZERO,
            'balance': running,
        })
    return {
        'account': _row(account, running),
        'start_date': start.isoformat(),
        'end_date': end.isoformat(),
        'opening_balance': opening,
        'closing_balance': running,
        'entries': rows,
    }
