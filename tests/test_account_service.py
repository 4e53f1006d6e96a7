"""
Test suite for the account service

Covers login and the temporary lockout, money movement with its ledger
entries, rollback on persistence failure and per-card serialization
under concurrent use.
"""

import threading
import pytest
from decimal import Decimal
from datetime import timedelta

from atm_core.audit import AuditEventType
from atm_core.ledger import TransactionType
from atm_core.results import ErrorKind, Session


CARD_A = "1111222233334444"
CARD_B = "5555666677778888"
UNKNOWN_CARD = "0000000000000000"


@pytest.fixture
def service(system):
    return system.account_service


@pytest.fixture
def account_a(make_account):
    return make_account(CARD_A, pin="1234", holder_name="Zhang San",
                        balance="500.00", withdraw_limit="200.00")


@pytest.fixture
def account_b(make_account):
    return make_account(CARD_B, pin="5678", holder_name="Li Si",
                        balance="50.00", withdraw_limit="100.00")


class TestLogin:
    """Test login and lockout behaviour"""

    def test_successful_login(self, service, account_a, clock):
        result = service.login(CARD_A, "1234")

        assert result
        assert not result.is_admin
        assert result.holder_name == "Zhang San"
        assert result.balance == Decimal("500.00")
        assert result.withdraw_limit == Decimal("200.00")
        assert result.session == Session(card_number=CARD_A, is_admin=False, authenticated_at=clock())

    def test_admin_login_flag(self, service, system):
        result = service.login(system.config.admin_card_number, system.config.admin_default_pin)
        assert result.is_admin
        assert result.session.is_admin

    @pytest.mark.parametrize("card,pin", [
        ("123", "1234"),
        ("", "1234"),
        (CARD_A, ""),
    ])
    def test_invalid_format(self, service, account_a, card, pin):
        result = service.login(card, pin)
        assert result.error_kind == ErrorKind.INVALID_FORMAT

    def test_unknown_card(self, service):
        result = service.login(UNKNOWN_CARD, "1234")
        assert result.error_kind == ErrorKind.NOT_FOUND

    def test_wrong_pin_reports_remaining_attempts(self, service, system, account_a):
        result = service.login(CARD_A, "9999")

        assert result.error_kind == ErrorKind.INVALID_CREDENTIALS
        assert result.remaining_attempts == 4
        assert system.store.get(CARD_A).failed_login_attempts == 1

    def test_administratively_locked(self, service, make_account):
        make_account(CARD_A, is_locked=True)

        result = service.login(CARD_A, "1234")
        assert result.error_kind == ErrorKind.ACCOUNT_LOCKED

    def test_lockout_after_five_failures(self, service, account_a):
        for _ in range(4):
            assert service.login(CARD_A, "9999").error_kind == ErrorKind.INVALID_CREDENTIALS

        fifth = service.login(CARD_A, "9999")
        assert fifth.error_kind == ErrorKind.TEMPORARILY_LOCKED
        assert fifth.lockout_remaining == timedelta(minutes=30)

        # Correct PIN is still refused while the cooldown runs
        result = service.login(CARD_A, "1234")
        assert result.error_kind == ErrorKind.TEMPORARILY_LOCKED
        assert result.lockout_remaining == timedelta(minutes=30)

    def test_lockout_remaining_counts_down(self, service, account_a, clock):
        for _ in range(5):
            service.login(CARD_A, "9999")

        clock.advance(minutes=12)
        result = service.login(CARD_A, "1234")
        assert result.lockout_remaining == timedelta(minutes=18)
        assert "18 minutes" in result.error_message

    def test_lockout_expires(self, service, system, account_a, clock):
        for _ in range(5):
            service.login(CARD_A, "9999")

        clock.advance(minutes=30)
        assert service.login(CARD_A, "1234")

        account = system.store.get(CARD_A)
        assert account.failed_login_attempts == 0
        assert account.temporary_lock_until is None

    def test_wrong_pin_after_expiry_starts_over(self, service, account_a, clock):
        for _ in range(5):
            service.login(CARD_A, "9999")

        clock.advance(minutes=31)
        result = service.login(CARD_A, "9999")
        assert result.error_kind == ErrorKind.INVALID_CREDENTIALS
        assert result.remaining_attempts == 4

    def test_success_resets_counter(self, service, system, account_a):
        service.login(CARD_A, "9999")
        service.login(CARD_A, "9999")
        assert service.login(CARD_A, "1234")

        assert system.store.get(CARD_A).failed_login_attempts == 0
        assert service.login(CARD_A, "9999").remaining_attempts == 4

    def test_login_events_audited(self, service, system, account_a):
        service.login(CARD_A, "9999")
        service.login(CARD_A, "1234")

        event_types = [e.event_type for e in system.audit_trail.get_events_for_entity(CARD_A)]
        assert event_types == [AuditEventType.LOGIN_FAILED, AuditEventType.LOGIN_SUCCESS]

    def test_failed_login_not_persisted(self, service, system, storage, account_a):
        storage.failing_records.add(("accounts", CARD_A))

        result = service.login(CARD_A, "9999")
        assert result.error_kind == ErrorKind.PERSISTENCE_FAILURE

    def test_logout(self, service, system, account_a):
        session = service.login(CARD_A, "1234").session
        assert service.logout(session)
        assert system.audit_trail.get_events_by_type(AuditEventType.LOGOUT)[0].entity_id == CARD_A


class TestWithdraw:
    """Test withdrawals"""

    def test_over_limit_then_at_limit(self, service, system, account_a):
        result = service.withdraw(CARD_A, 250)
        assert result.error_kind == ErrorKind.LIMIT_EXCEEDED
        assert system.ledger.count() == 0

        result = service.withdraw(CARD_A, 200)
        assert result
        assert result.value == Decimal("300")
        assert service.get_balance(CARD_A) == Decimal("300")

        history = system.ledger.for_card(CARD_A)
        assert len(history) == 1
        assert history[0].transaction_type == TransactionType.WITHDRAWAL
        assert history[0].amount == Decimal("200")
        assert history[0].balance_after == Decimal("300")

    def test_insufficient_funds(self, service, make_account):
        make_account(CARD_A, balance="100.00", withdraw_limit="200.00")
        assert service.withdraw(CARD_A, 150).error_kind == ErrorKind.INSUFFICIENT_FUNDS
        assert service.get_balance(CARD_A) == Decimal("100.00")

    def test_exact_balance(self, service, make_account):
        make_account(CARD_A, balance="100.00", withdraw_limit="200.00")
        assert service.withdraw(CARD_A, 100)
        assert service.get_balance(CARD_A) == Decimal("0")

    @pytest.mark.parametrize("amount", [0, -10, "abc", None])
    def test_invalid_amount(self, service, account_a, amount):
        assert service.withdraw(CARD_A, amount).error_kind == ErrorKind.INVALID_FORMAT

    def test_unknown_card(self, service):
        assert service.withdraw(UNKNOWN_CARD, 10).error_kind == ErrorKind.NOT_FOUND

    def test_locked_account(self, service, make_account):
        make_account(CARD_A, is_locked=True)
        assert service.withdraw(CARD_A, 10).error_kind == ErrorKind.ACCOUNT_LOCKED

    def test_temporarily_locked_account(self, service, account_a):
        for _ in range(5):
            service.login(CARD_A, "9999")
        assert service.withdraw(CARD_A, 10).error_kind == ErrorKind.TEMPORARILY_LOCKED

    def test_account_write_failure(self, service, system, storage, account_a):
        storage.failing_records.add(("accounts", CARD_A))

        result = service.withdraw(CARD_A, 100)
        assert result.error_kind == ErrorKind.PERSISTENCE_FAILURE
        assert service.get_balance(CARD_A) == Decimal("500.00")
        assert system.ledger.count() == 0

    def test_ledger_failure_rolls_back_balance(self, service, system, storage, account_a):
        storage.failing_tables.add("transactions")

        result = service.withdraw(CARD_A, 100)
        assert result.error_kind == ErrorKind.PERSISTENCE_FAILURE
        assert service.get_balance(CARD_A) == Decimal("500.00")

    def test_read_failure(self, service, storage, account_a):
        storage.fail_reads = True
        assert service.withdraw(CARD_A, 100).error_kind == ErrorKind.PERSISTENCE_FAILURE


class TestDeposit:
    """Test deposits"""

    def test_deposit(self, service, system, account_a):
        result = service.deposit(CARD_A, "150.25")
        assert result.value == Decimal("650.25")

        entry = system.ledger.recent(CARD_A, 1)[0]
        assert entry.transaction_type == TransactionType.DEPOSIT
        assert entry.balance_after == Decimal("650.25")

    def test_deposit_cap(self, service, account_a):
        result = service.deposit(CARD_A, "1000000.01")
        assert result.error_kind == ErrorKind.LIMIT_EXCEEDED
        assert service.get_balance(CARD_A) == Decimal("500.00")

    def test_deposit_not_bounded_by_withdraw_limit(self, service, account_a):
        assert service.deposit(CARD_A, 5000)

    def test_locked_account(self, service, make_account):
        make_account(CARD_A, is_locked=True)
        assert service.deposit(CARD_A, 10).error_kind == ErrorKind.ACCOUNT_LOCKED

    def test_ledger_failure_rolls_back_balance(self, service, storage, account_a):
        storage.failing_tables.add("transactions")

        assert service.deposit(CARD_A, 10).error_kind == ErrorKind.PERSISTENCE_FAILURE
        assert service.get_balance(CARD_A) == Decimal("500.00")


class TestTransfer:
    """Test transfers between two accounts"""

    def test_transfer(self, service, system, make_account, account_b):
        make_account(CARD_A, holder_name="Zhang San", balance="300.00", withdraw_limit="200.00")

        result = service.transfer(CARD_A, CARD_B, 100)
        assert result
        assert result.value == Decimal("200")
        assert service.get_balance(CARD_A) == Decimal("200")
        assert service.get_balance(CARD_B) == Decimal("150")

        debit, credit = system.ledger.all()
        assert debit.card_number == CARD_A
        assert debit.target_card_number == CARD_B
        assert debit.transaction_type == TransactionType.TRANSFER
        assert debit.balance_after == Decimal("200")
        assert credit.card_number == CARD_B
        assert credit.target_card_number is None
        assert credit.transaction_type == TransactionType.DEPOSIT
        assert credit.balance_after == Decimal("150")
        assert debit.description == "Transfer to Li Si"
        assert credit.description == "Transfer from Zhang San"

    def test_history_shows_only_own_side(self, service, system, make_account, account_b):
        make_account(CARD_A, holder_name="Zhang San", balance="300.00", withdraw_limit="200.00")
        service.transfer(CARD_A, CARD_B, 100)

        sent = service.transaction_history(CARD_A)
        assert all(t.card_number == CARD_A for t in sent)
        assert [(t.transaction_type, t.balance_after) for t in sent] == [
            (TransactionType.TRANSFER, Decimal("200.00"))
        ]

        received = service.transaction_history(CARD_B)
        assert all(t.card_number == CARD_B for t in received)
        assert [(t.transaction_type, t.balance_after) for t in received] == [
            (TransactionType.DEPOSIT, Decimal("150.00"))
        ]

        # The ledger still links the debit to the receiving card
        assert len(system.ledger.for_card(CARD_B)) == 2

    def test_to_self(self, service, account_a):
        assert service.transfer(CARD_A, CARD_A, 10).error_kind == ErrorKind.INVALID_FORMAT

    def test_to_unknown_card(self, service, account_a):
        assert service.transfer(CARD_A, UNKNOWN_CARD, 10).error_kind == ErrorKind.NOT_FOUND

    def test_to_malformed_card(self, service, account_a):
        assert service.transfer(CARD_A, "1234", 10).error_kind == ErrorKind.INVALID_FORMAT

    def test_to_locked_target(self, service, account_a, make_account):
        make_account(CARD_B, is_locked=True)
        assert service.transfer(CARD_A, CARD_B, 10).error_kind == ErrorKind.ACCOUNT_LOCKED
        assert service.get_balance(CARD_A) == Decimal("500.00")

    def test_from_locked_source(self, service, make_account, account_b):
        make_account(CARD_A, is_locked=True)
        assert service.transfer(CARD_A, CARD_B, 10).error_kind == ErrorKind.ACCOUNT_LOCKED

    def test_over_withdraw_limit(self, service, account_a, account_b):
        assert service.transfer(CARD_A, CARD_B, 201).error_kind == ErrorKind.LIMIT_EXCEEDED

    def test_insufficient_funds(self, service, account_a, account_b):
        assert service.transfer(CARD_B, CARD_A, 60).error_kind == ErrorKind.INSUFFICIENT_FUNDS

    def test_target_write_failure_compensates_source(self, service, system, storage, account_a, account_b):
        storage.failing_records.add(("accounts", CARD_B))

        result = service.transfer(CARD_A, CARD_B, 100)
        assert result.error_kind == ErrorKind.PERSISTENCE_FAILURE
        assert service.get_balance(CARD_A) == Decimal("500.00")
        assert service.get_balance(CARD_B) == Decimal("50.00")
        assert system.ledger.count() == 0

    def test_source_write_failure(self, service, system, storage, account_a, account_b):
        storage.failing_records.add(("accounts", CARD_A))

        assert service.transfer(CARD_A, CARD_B, 100).error_kind == ErrorKind.PERSISTENCE_FAILURE
        assert service.get_balance(CARD_B) == Decimal("50.00")
        assert system.ledger.count() == 0

    def test_partial_ledger_failure_rolls_back_both(self, service, system, storage, account_a, account_b):
        storage.limit_saves("transactions", 1)

        result = service.transfer(CARD_A, CARD_B, 100)
        assert result.error_kind == ErrorKind.PERSISTENCE_FAILURE
        assert service.get_balance(CARD_A) == Decimal("500.00")
        assert service.get_balance(CARD_B) == Decimal("50.00")
        assert system.ledger.count() == 0


class TestChangePin:
    """Test PIN changes"""

    def test_change_pin(self, service, system, account_a):
        old_salt = system.store.get(CARD_A).salt

        assert service.change_pin(CARD_A, "1234", "4321", "4321")
        assert system.store.get(CARD_A).salt != old_salt
        assert service.login(CARD_A, "4321")
        assert service.login(CARD_A, "1234").error_kind == ErrorKind.INVALID_CREDENTIALS

        assert system.audit_trail.get_events_by_type(AuditEventType.PIN_CHANGED)
        entry, = system.ledger.all()
        assert entry.card_number == CARD_A
        assert entry.transaction_type == TransactionType.OTHER
        assert entry.amount == Decimal("0")
        assert entry.balance_after == Decimal("500.00")

    def test_wrong_current_pin_does_not_count_as_failed_login(self, service, system, account_a):
        result = service.change_pin(CARD_A, "9999", "4321", "4321")
        assert result.error_kind == ErrorKind.INVALID_CREDENTIALS
        assert system.store.get(CARD_A).failed_login_attempts == 0

    def test_confirmation_mismatch(self, service, account_a):
        result = service.change_pin(CARD_A, "1234", "4321", "4322")
        assert result.error_kind == ErrorKind.CONFIRMATION_MISMATCH
        assert service.login(CARD_A, "1234")

    def test_write_failure_keeps_old_pin(self, service, storage, account_a):
        storage.failing_records.add(("accounts", CARD_A))
        assert service.change_pin(CARD_A, "1234", "4321").error_kind == ErrorKind.PERSISTENCE_FAILURE

        storage.failing_records.clear()
        assert service.login(CARD_A, "1234")

    def test_ledger_failure_keeps_old_pin(self, service, system, storage, account_a):
        storage.failing_tables.add("transactions")
        assert service.change_pin(CARD_A, "1234", "4321").error_kind == ErrorKind.PERSISTENCE_FAILURE

        storage.failing_tables.clear()
        assert service.login(CARD_A, "1234")
        assert system.ledger.count() == 0


class TestQueries:
    """Test balance inquiry, read helpers and history"""

    def test_balance_inquiry_recorded(self, service, system, account_a):
        result = service.balance_inquiry(CARD_A)
        assert result.value == Decimal("500.00")

        entry = system.ledger.recent(CARD_A, 1)[0]
        assert entry.transaction_type == TransactionType.BALANCE_INQUIRY
        assert entry.amount == Decimal("0")

    def test_read_helpers(self, service, account_a, make_account):
        make_account(CARD_B, holder_name="Li Si", is_locked=True)

        assert service.get_holder_name(CARD_A) == "Zhang San"
        assert service.get_withdraw_limit(CARD_A) == Decimal("200.00")
        assert not service.is_account_locked(CARD_A)
        assert service.is_account_locked(CARD_B)

        assert service.get_balance(UNKNOWN_CARD) == Decimal("0")
        assert service.get_holder_name(UNKNOWN_CARD) == ""

    def test_history_most_recent_first(self, service, account_a):
        service.deposit(CARD_A, 10)
        service.withdraw(CARD_A, 20)
        service.deposit(CARD_A, 30)

        history = service.transaction_history(CARD_A)
        assert [t.amount for t in history] == [Decimal("30"), Decimal("20"), Decimal("10")]
        assert len(service.transaction_history(CARD_A, 2)) == 2

    def test_balance_matches_signed_history(self, service, system, account_a, account_b):
        service.deposit(CARD_A, "120.50")
        service.withdraw(CARD_A, 75)
        service.transfer(CARD_A, CARD_B, 40)
        service.transfer(CARD_B, CARD_A, "12.25")
        service.withdraw(CARD_A, 1000)  # rejected

        signed = Decimal("0")
        for entry in system.ledger.all():
            if entry.card_number != CARD_A:
                continue
            if entry.transaction_type == TransactionType.DEPOSIT:
                signed += entry.amount
            elif entry.transaction_type in (TransactionType.WITHDRAWAL, TransactionType.TRANSFER):
                signed -= entry.amount

        assert service.get_balance(CARD_A) == Decimal("500.00") + signed
        assert service.get_balance(CARD_A) == Decimal("517.75")


class TestMalformedCard:
    """Test that a malformed card number is rejected before any lock is taken"""

    @pytest.mark.parametrize("call", [
        lambda s: s.withdraw("not-a-card", 10),
        lambda s: s.deposit("not-a-card", 10),
        lambda s: s.transfer("not-a-card", CARD_B, 10),
        lambda s: s.change_pin("not-a-card", "1234", "4321"),
        lambda s: s.balance_inquiry("not-a-card"),
    ])
    def test_rejected_without_lock(self, service, account_b, call):
        assert call(service).error_kind == ErrorKind.INVALID_FORMAT
        assert "not-a-card" not in service.locks._locks
        assert CARD_B not in service.locks._locks


class TestConcurrency:
    """Per-card serialization under concurrent use"""

    def test_concurrent_withdrawals_do_not_lose_updates(self, service, system, make_account):
        make_account(CARD_A, balance="1000.00", withdraw_limit="100.00")
        results = []

        def worker():
            results.append(service.withdraw(CARD_A, 10))

        threads = [threading.Thread(target=worker) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(results)
        assert service.get_balance(CARD_A) == Decimal("500.00")
        assert system.ledger.count() == 50

    def test_never_overdrawn(self, service, make_account):
        make_account(CARD_A, balance="100.00", withdraw_limit="100.00")
        results = []

        def worker():
            results.append(service.withdraw(CARD_A, 30))

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r) == 3
        assert service.get_balance(CARD_A) == Decimal("10.00")

    def test_opposite_transfers_do_not_deadlock(self, service, make_account):
        make_account(CARD_A, balance="1000.00", withdraw_limit="100.00")
        make_account(CARD_B, balance="1000.00", withdraw_limit="100.00")

        def forward():
            for _ in range(20):
                service.transfer(CARD_A, CARD_B, 5)

        def backward():
            for _ in range(20):
                service.transfer(CARD_B, CARD_A, 3)

        threads = [threading.Thread(target=forward), threading.Thread(target=backward)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
            assert not t.is_alive()

        assert service.get_balance(CARD_A) == Decimal("960.00")
        assert service.get_balance(CARD_B) == Decimal("1040.00")
