"""Tests for the transaction store: lookups, compare-and-set status writes, expiry scan"""

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import backdate, reload_transaction
from models import Transaction, TransactionStatus
from services.transaction_store import TransactionStore, scan_cursor
from utils.datetime_helpers import get_naive_utc_now
from utils.escrow_errors import InvalidTransition, NotAcceptedState, NotFound


@pytest.fixture
def parties(make_user):
    return make_user("Sender"), make_user("Receiver")


def _insert(session_factory, sender, receiver, vtid="VTID00000001", time_limit=24, status="pending"):
    with session_factory() as session:
        transaction = TransactionStore(session).insert(Transaction(
            vtid=vtid,
            sender_id=sender.id,
            receiver_id=receiver.id,
            amount=Decimal("100.00"),
            status=status,
            conditions=[{"description": "Deliver the goods", "completed": False}],
            time_limit=time_limit,
        ))
        session.commit()
        return transaction.id


class TestLookups:

    def test_get_by_id_and_vtid(self, session_factory, parties):
        sender, receiver = parties
        transaction_id = _insert(session_factory, sender, receiver, vtid="ABCDEF123456")

        with session_factory() as session:
            store = TransactionStore(session)
            assert store.get_by_id(transaction_id).vtid == "ABCDEF123456"
            assert store.get_by_vtid("abcdef123456").id == transaction_id
            assert store.get_by_vtid("ZZZZZZZZZZZZ") is None
            assert store.get_by_id("missing") is None

    def test_lists_by_party(self, session_factory, parties, make_user):
        sender, receiver = parties
        outsider = make_user("Outsider")
        first = _insert(session_factory, sender, receiver, vtid="VTID00000001")
        second = _insert(session_factory, receiver, sender, vtid="VTID00000002")

        with session_factory() as session:
            store = TransactionStore(session)
            assert [t.id for t in store.list_by_sender(sender.id)] == [first]
            assert [t.id for t in store.list_by_receiver(sender.id)] == [second]
            assert {t.id for t in store.list_for_user(sender.id)} == {first, second}
            assert store.list_for_user(outsider.id) == []

    def test_insert_requires_pending(self, session_factory, parties):
        sender, receiver = parties
        with pytest.raises(InvalidTransition):
            _insert(session_factory, sender, receiver, status="accepted")

    def test_lock_unknown_transaction(self, session_factory):
        with session_factory() as session:
            with pytest.raises(NotFound):
                TransactionStore(session).lock("missing")


class TestUpdateStatus:

    def test_compare_and_set_applies_and_stamps(self, session_factory, parties):
        sender, receiver = parties
        transaction_id = _insert(session_factory, sender, receiver)

        with session_factory() as session:
            applied = TransactionStore(session).update_status(
                transaction_id, TransactionStatus.ACCEPTED.value, expected_status="pending"
            )
            session.commit()

        assert applied is True
        stored = reload_transaction(session_factory, transaction_id)
        assert stored.status == "accepted"
        assert stored.accepted_at is not None

    def test_stale_expected_status_is_rejected(self, session_factory, parties):
        """A writer that read 'pending' cannot apply its change once another writer moved the row on"""
        sender, receiver = parties
        transaction_id = _insert(session_factory, sender, receiver)

        with session_factory() as session:
            TransactionStore(session).update_status(transaction_id, "accepted", expected_status="pending")
            session.commit()

        with session_factory() as session:
            with pytest.raises(InvalidTransition) as exc_info:
                TransactionStore(session).update_status(transaction_id, "accepted", expected_status="pending")
        assert exc_info.value.current_status == "accepted"

    def test_repeated_terminal_status_is_noop(self, session_factory, parties):
        sender, receiver = parties
        transaction_id = _insert(session_factory, sender, receiver)

        with session_factory() as session:
            store = TransactionStore(session)
            assert store.update_status(transaction_id, "cancelled", expected_status="pending") is True
            assert store.update_status(transaction_id, "cancelled", expected_status="pending") is False
            assert store.update_status(transaction_id, "cancelled", expected_status="cancelled") is False
            session.commit()

    def test_illegal_transition(self, session_factory, parties):
        sender, receiver = parties
        transaction_id = _insert(session_factory, sender, receiver)

        with session_factory() as session:
            with pytest.raises(InvalidTransition):
                TransactionStore(session).update_status(transaction_id, "completed", expected_status="pending")


class TestUpdateConditions:

    def test_requires_accepted(self, session_factory, parties):
        sender, receiver = parties
        transaction_id = _insert(session_factory, sender, receiver)

        with session_factory() as session:
            with pytest.raises(NotAcceptedState):
                TransactionStore(session).update_conditions(
                    transaction_id, [{"description": "Deliver the goods", "completed": True}]
                )

    def test_replaces_conditions_when_accepted(self, session_factory, parties):
        sender, receiver = parties
        transaction_id = _insert(session_factory, sender, receiver)

        with session_factory() as session:
            store = TransactionStore(session)
            store.update_status(transaction_id, "accepted", expected_status="pending")
            store.update_conditions(transaction_id, [{"description": "Deliver the goods", "completed": True}])
            session.commit()

        assert reload_transaction(session_factory, transaction_id).conditions == [
            {"description": "Deliver the goods", "completed": True}
        ]


class TestFindExpired:

    def test_pending_deadline_from_created_at(self, session_factory, parties):
        sender, receiver = parties
        now = get_naive_utc_now()
        expired = _insert(session_factory, sender, receiver, vtid="VTID00000001", time_limit=1)
        fresh = _insert(session_factory, sender, receiver, vtid="VTID00000002", time_limit=1)
        backdate(session_factory, expired, created_at=now - timedelta(hours=2))

        with session_factory() as session:
            found = [t.id for t in TransactionStore(session).find_expired(now)]
        assert found == [expired]
        assert fresh not in found

    def test_accepted_deadline_from_accepted_at(self, session_factory, parties):
        sender, receiver = parties
        now = get_naive_utc_now()
        transaction_id = _insert(session_factory, sender, receiver, time_limit=2)
        with session_factory() as session:
            TransactionStore(session).update_status(transaction_id, "accepted", expected_status="pending")
            session.commit()

        # Created 3h ago, accepted 1h ago with a 2h limit: not expired yet
        backdate(
            session_factory, transaction_id,
            created_at=now - timedelta(hours=3), accepted_at=now - timedelta(hours=1),
        )
        with session_factory() as session:
            assert TransactionStore(session).find_expired(now) == []

        backdate(session_factory, transaction_id, accepted_at=now - timedelta(hours=2, minutes=1))
        with session_factory() as session:
            assert [t.id for t in TransactionStore(session).find_expired(now)] == [transaction_id]

    def test_limit_and_cursor(self, session_factory, parties):
        sender, receiver = parties
        now = get_naive_utc_now()
        ids = []
        for n in range(3):
            transaction_id = _insert(session_factory, sender, receiver, vtid=f"VTID0000000{n}", time_limit=1)
            backdate(session_factory, transaction_id, created_at=now - timedelta(hours=5 - n))
            ids.append(transaction_id)

        with session_factory() as session:
            store = TransactionStore(session)
            assert [t.id for t in store.find_expired(now, limit=2)] == ids[:2]
            first = store.find_expired(now, limit=1)[0]
            assert [t.id for t in store.find_expired(now, limit=2, after=scan_cursor(first))] == ids[1:]

    def test_find_expired_pages_past_unexpired_candidates(self, session_factory, parties):
        sender, receiver = parties
        now = get_naive_utc_now()
        long_running = []
        for n in range(3):
            transaction_id = _insert(session_factory, sender, receiver, vtid=f"LONG0000000{n}", time_limit=48)
            backdate(session_factory, transaction_id, created_at=now - timedelta(hours=10, minutes=n))
            long_running.append(transaction_id)
        expired = _insert(session_factory, sender, receiver, vtid="EXPIRED00001", time_limit=1)
        backdate(session_factory, expired, created_at=now - timedelta(hours=2))

        with session_factory() as session:
            assert [t.id for t in TransactionStore(session).find_expired(now, limit=1)] == [expired]

    def test_scan_skips_recently_accepted(self, session_factory, parties):
        sender, receiver = parties
        now = get_naive_utc_now()
        transaction_id = _insert(session_factory, sender, receiver, time_limit=1)
        with session_factory() as session:
            TransactionStore(session).update_status(transaction_id, "accepted", expected_status="pending")
            session.commit()
        backdate(session_factory, transaction_id,
                 created_at=now - timedelta(hours=5), accepted_at=now - timedelta(minutes=30))

        with session_factory() as session:
            store = TransactionStore(session)
            assert store.scan_expiry_candidates(now) == []
            assert [t.id for t in store.scan_expiry_candidates(now + timedelta(hours=1))] == [transaction_id]

    def test_terminal_transactions_are_ignored(self, session_factory, parties):
        sender, receiver = parties
        now = get_naive_utc_now()
        transaction_id = _insert(session_factory, sender, receiver, time_limit=1)
        with session_factory() as session:
            TransactionStore(session).update_status(transaction_id, "cancelled", expected_status="pending")
            session.commit()
        backdate(session_factory, transaction_id, created_at=now - timedelta(hours=2))

        with session_factory() as session:
            assert TransactionStore(session).find_expired(now) == []
