"""
Tests for jar_business_logic.py

Jar CRUD rules and the transfer engine: conservation, no overdraft,
all-or-nothing writes and ownership checks.
"""

import threading
import pytest
from decimal import Decimal
from peewee import OperationalError
from database_model import database, Jar, JarTransfer
from errors import (
    InvalidAmountError,
    NotFoundError,
    InsufficientFundsError,
    JarNotEmptyError,
    TransactionFailure,
)
import database_manager as db
import goal_business_logic as goalbl
import jar_business_logic as jarbl
import jar_database_manager as jardb

USER = 'user-1'
OTHER_USER = 'user-2'


def _balance(jar_id):
    return Jar.get_by_id(jar_id).balance


# ==================== JAR CRUD ====================

def test_create_jar(setup_test_db):
    """New jars start with zero balance and the default color."""
    jar = jarbl.create_jar(USER, '  Travel  ')
    assert jar['name'] == 'Travel'
    assert jar['balance'] == Decimal('0')
    assert jar['color'] == jarbl.DEFAULT_JAR_COLOR
    assert jar['is_primary'] is False


def test_create_jar_requires_name(setup_test_db):
    with pytest.raises(ValueError, match="Jar name is required"):
        jarbl.create_jar(USER, '   ')


def test_create_jar_rejects_duplicate_name_case_insensitive(setup_test_db):
    jarbl.create_jar(USER, 'Travel')
    with pytest.raises(ValueError, match="already exists"):
        jarbl.create_jar(USER, 'travel')

    # Other users are unaffected
    assert jarbl.create_jar(OTHER_USER, 'Travel')['name'] == 'Travel'


def test_get_jars_primary_first(setup_test_db):
    jarbl.create_jar(USER, 'Travel')
    jarbl.create_jar(USER, 'Main', is_primary=True)
    jarbl.create_jar(OTHER_USER, 'Hidden')

    jars = jarbl.get_jars(USER)
    assert [j['name'] for j in jars][0] == 'Main'
    assert {j['name'] for j in jars} == {'Main', 'Travel'}


def test_delete_empty_jar(setup_test_db):
    jar = jarbl.create_jar(USER, 'Travel')
    jarbl.delete_jar(USER, jar['id'])
    assert jarbl.get_jars(USER) == []


def test_delete_jar_with_balance_rejected(setup_test_db):
    jar = jarbl.create_jar(USER, 'Travel')
    jarbl.fund_jar(USER, jar['id'], 100)

    with pytest.raises(JarNotEmptyError, match="only delete an empty jar"):
        jarbl.delete_jar(USER, jar['id'])


def test_delete_jar_keeps_transfer_history(setup_test_db):
    """Transfers survive jar deletion."""
    jar = jarbl.create_jar(USER, 'Travel')
    jarbl.fund_jar(USER, jar['id'], 100)
    jarbl.withdraw_jar(USER, jar['id'], 100)
    jarbl.delete_jar(USER, jar['id'])

    assert len(jarbl.get_transfer_history(USER)) == 2


def test_delete_other_users_jar_not_found(setup_test_db):
    jar = jarbl.create_jar(USER, 'Travel')
    with pytest.raises(NotFoundError, match="Jar not found"):
        jarbl.delete_jar(OTHER_USER, jar['id'])


# ==================== TRANSFER ENGINE ====================

def test_fund_then_overdraw_scenario(setup_test_db):
    """Fund 5000, withdraw 6000 -> rejected, balance unchanged."""
    jar = jarbl.create_jar(USER, 'Travel')

    result = jarbl.fund_jar(USER, jar['id'], 5000)
    assert result['to_jar']['balance'] == Decimal('5000')
    assert result['from_jar'] is None
    assert result['transfer']['memo'] == 'Fund jar'
    assert _balance(jar['id']) == Decimal('5000')
    assert JarTransfer.select().count() == 1

    with pytest.raises(InsufficientFundsError, match="Insufficient jar balance"):
        jarbl.withdraw_jar(USER, jar['id'], 6000)

    assert _balance(jar['id']) == Decimal('5000')
    assert JarTransfer.select().count() == 1


def test_withdraw_exact_balance(setup_test_db):
    jar = jarbl.create_jar(USER, 'Travel')
    jarbl.fund_jar(USER, jar['id'], '250.50')

    result = jarbl.withdraw_jar(USER, jar['id'], '250.50', memo='Cash out')
    assert result['from_jar']['balance'] == Decimal('0')
    assert result['transfer']['memo'] == 'Cash out'
    assert result['transfer']['to_jar_id'] is None


def test_concurrent_withdrawals_never_overdraw(setup_test_db):
    """Parallel withdrawals on one jar are serialized; only one fits."""
    jar = jarbl.create_jar(USER, 'Shared')
    jarbl.fund_jar(USER, jar['id'], 100)

    start = threading.Barrier(8)
    results = []
    results_lock = threading.Lock()

    def withdraw():
        with database.connection_context():
            start.wait()
            try:
                jarbl.withdraw_jar(USER, jar['id'], 60)
                outcome = 'ok'
            except InsufficientFundsError:
                outcome = 'insufficient'
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=withdraw) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == ['insufficient'] * 7 + ['ok']
    assert _balance(jar['id']) == Decimal('40')
    assert JarTransfer.select().count() == 2


def test_transfer_between_jars_conserves_money(setup_test_db):
    """Jar-to-jar transfers move money without creating or destroying it."""
    a = jarbl.create_jar(USER, 'A')
    b = jarbl.create_jar(USER, 'B')
    jarbl.fund_jar(USER, a['id'], 1000)

    result = jarbl.transfer_between_jars(USER, a['id'], b['id'], '333.33')
    assert result['transfer']['memo'] == 'Jar transfer'

    assert _balance(a['id']) == Decimal('666.67')
    assert _balance(b['id']) == Decimal('333.33')
    assert _balance(a['id']) + _balance(b['id']) == Decimal('1000')


def test_transfer_between_jars_requires_both_ids(setup_test_db):
    a = jarbl.create_jar(USER, 'A')
    with pytest.raises(ValueError, match="from_jar_id and to_jar_id are required"):
        jarbl.transfer_between_jars(USER, a['id'], '', 10)


def test_transfer_between_jars_rejects_invalid_amount(setup_test_db):
    a = jarbl.create_jar(USER, 'A')
    b = jarbl.create_jar(USER, 'B')
    with pytest.raises(InvalidAmountError):
        jarbl.transfer_between_jars(USER, a['id'], b['id'], '-1')


def test_transfer_returns_related_goal(setup_test_db):
    """The goal moved by a transfer comes back serialized with the jars."""
    jar = jarbl.create_jar(USER, 'Laptop fund')
    goal = goalbl.create_goal(USER, 'Laptop', 30000, '2025-06-30', jar['id'])

    result = jarbl.transfer(USER, None, jar['id'], 500, related_goal_id=goal['id'])

    assert result['goal']['id'] == goal['id']
    assert result['goal']['current_amount'] == Decimal('500')
    assert result['goal']['auto_allocate']['type'] == 'percent'
    assert result['to_jar']['balance'] == Decimal('500')


def test_transfer_to_same_jar_keeps_balance(setup_test_db):
    jar = jarbl.create_jar(USER, 'A')
    jarbl.fund_jar(USER, jar['id'], 100)

    jarbl.transfer(USER, jar['id'], jar['id'], 40)
    assert _balance(jar['id']) == Decimal('100')


@pytest.mark.parametrize("amount", [0, -5, 'abc', None])
def test_transfer_rejects_invalid_amount(setup_test_db, amount):
    jar = jarbl.create_jar(USER, 'A')
    with pytest.raises(InvalidAmountError):
        jarbl.fund_jar(USER, jar['id'], amount)
    assert JarTransfer.select().count() == 0


def test_transfer_missing_destination(setup_test_db):
    a = jarbl.create_jar(USER, 'A')
    jarbl.fund_jar(USER, a['id'], 100)

    with pytest.raises(NotFoundError, match="Destination jar not found"):
        jarbl.transfer_between_jars(USER, a['id'], 'missing', 50)

    # Nothing moved
    assert _balance(a['id']) == Decimal('100')
    assert JarTransfer.select().count() == 1


def test_transfer_from_other_users_jar_not_found(setup_test_db):
    jar = jarbl.create_jar(OTHER_USER, 'Theirs')
    jarbl.fund_jar(OTHER_USER, jar['id'], 100)

    with pytest.raises(NotFoundError, match="Source jar not found"):
        jarbl.withdraw_jar(USER, jar['id'], 10)
    assert _balance(jar['id']) == Decimal('100')


def test_transfer_missing_goal_rolls_back(setup_test_db):
    """A bad related goal aborts the whole transfer."""
    jar = jarbl.create_jar(USER, 'A')
    with pytest.raises(NotFoundError, match="Goal not found"):
        jarbl.transfer(USER, None, jar['id'], 100, related_goal_id='missing')

    assert _balance(jar['id']) == Decimal('0')
    assert JarTransfer.select().count() == 0


def test_database_failure_becomes_transaction_failure(setup_test_db, monkeypatch):
    """Database errors surface as TransactionFailure after retries."""
    jar = jarbl.create_jar(USER, 'A')
    monkeypatch.setattr(db, 'RETRY_DELAY', 0)

    def broken(*args, **kwargs):
        raise OperationalError("database is locked")

    monkeypatch.setattr(jardb, '_lock_jar', broken)

    with pytest.raises(TransactionFailure):
        jarbl.fund_jar(USER, jar['id'], 100)
    assert _balance(jar['id']) == Decimal('0')


def test_transfer_history_newest_first(setup_test_db):
    jar = jarbl.create_jar(USER, 'A')
    jarbl.fund_jar(USER, jar['id'], 100, memo='first')
    jarbl.fund_jar(USER, jar['id'], 50, memo='second')
    jarbl.fund_jar(USER, jar['id'], 25, memo='third')

    history = jarbl.get_transfer_history(USER)
    assert [t['memo'] for t in history] == ['third', 'second', 'first']
    assert jarbl.get_transfer_history(OTHER_USER) == []


def test_transfer_history_is_limited(setup_test_db):
    jar = jarbl.create_jar(USER, 'A')
    for _ in range(5):
        jarbl.fund_jar(USER, jar['id'], 1)

    assert len(jardb.get_transfers(USER, limit=3)) == 3
