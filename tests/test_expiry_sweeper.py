"""Tests for the expiry sweep"""

from datetime import timedelta
from decimal import Decimal

from conftest import backdate, reload_transaction, reload_user, total_money
from services.notification_service import NotificationEvent
from utils.datetime_helpers import get_naive_utc_now

CONDITIONS = ["Deliver"]


class TestExpirySweeper:

    def test_pending_created_two_hours_ago_is_cancelled(self, escrow_engine, sweeper, session_factory, make_user, sink):
        sender, receiver = make_user("Sender"), make_user("Receiver")
        transaction = escrow_engine.create_transaction(sender.id, receiver.id, Decimal("200.00"), CONDITIONS, 1)
        backdate(session_factory, transaction.id, created_at=get_naive_utc_now() - timedelta(hours=2))
        before = total_money(session_factory)

        assert sweeper.sweep() == 1

        stored = reload_transaction(session_factory, transaction.id)
        assert stored.status == "cancelled"
        assert stored.cancelled_at is not None
        stored_sender = reload_user(session_factory, sender.id)
        assert stored_sender.balance == Decimal("1000.00")
        assert stored_sender.escrow_balance == Decimal("0.00")
        assert total_money(session_factory) == before
        assert sink.kinds()[-1] is NotificationEvent.TRANSACTION_CANCELLED
        assert transaction.id in reload_user(session_factory, receiver.id).unread_transaction_ids

    def test_accepted_deadline_measured_from_acceptance(self, escrow_engine, sweeper, session_factory, make_user):
        sender, receiver = make_user("Sender"), make_user("Receiver")
        transaction = escrow_engine.create_transaction(sender.id, receiver.id, 50, CONDITIONS, 2)
        escrow_engine.accept_transaction(transaction.id, receiver.id)
        now = get_naive_utc_now()

        # created long ago but accepted recently: still running
        backdate(session_factory, transaction.id,
                 created_at=now - timedelta(hours=10), accepted_at=now - timedelta(hours=1))
        assert sweeper.sweep(now) == 0
        assert reload_transaction(session_factory, transaction.id).status == "accepted"

        assert sweeper.sweep(now + timedelta(hours=1, minutes=1)) == 1
        assert reload_transaction(session_factory, transaction.id).status == "cancelled"
        assert reload_user(session_factory, sender.id).balance == Decimal("1000.00")

    def test_sweeps_across_batches(self, escrow_engine, sweeper, session_factory, make_user):
        """batch_size is 2 in the fixture; five candidates need three batches"""
        sender, receiver = make_user("Sender"), make_user("Receiver")
        ids = [
            escrow_engine.create_transaction(sender.id, receiver.id, 10, CONDITIONS, 1).id
            for _ in range(5)
        ]
        for transaction_id in ids:
            backdate(session_factory, transaction_id, created_at=get_naive_utc_now() - timedelta(hours=3))

        assert sweeper.sweep() == 5
        assert all(reload_transaction(session_factory, t).status == "cancelled" for t in ids)
        assert reload_user(session_factory, sender.id).escrow_balance == Decimal("0.00")

    def test_second_sweep_is_noop(self, escrow_engine, sweeper, session_factory, make_user):
        sender, receiver = make_user("Sender"), make_user("Receiver")
        transaction = escrow_engine.create_transaction(sender.id, receiver.id, 10, CONDITIONS, 1)
        backdate(session_factory, transaction.id, created_at=get_naive_utc_now() - timedelta(hours=2))

        assert sweeper.sweep() == 1
        assert sweeper.sweep() == 0
        assert reload_user(session_factory, sender.id).balance == Decimal("1000.00")

    def test_failing_candidate_does_not_stop_the_sweep(self, escrow_engine, sweeper, session_factory, make_user, monkeypatch):
        sender, receiver = make_user("Sender"), make_user("Receiver")
        ids = [
            escrow_engine.create_transaction(sender.id, receiver.id, 10, CONDITIONS, 1).id
            for _ in range(3)
        ]
        for n, transaction_id in enumerate(ids):
            backdate(session_factory, transaction_id, created_at=get_naive_utc_now() - timedelta(hours=5 - n))

        real_expire = escrow_engine.expire_transaction

        def flaky_expire(transaction_id, now=None):
            if transaction_id == ids[0]:
                raise RuntimeError("database hiccup")
            return real_expire(transaction_id, now)

        monkeypatch.setattr(escrow_engine, "expire_transaction", flaky_expire)

        assert sweeper.sweep() == 2
        assert reload_transaction(session_factory, ids[0]).status == "pending"
        assert reload_transaction(session_factory, ids[1]).status == "cancelled"
        assert reload_transaction(session_factory, ids[2]).status == "cancelled"

    def test_completed_and_fresh_transactions_untouched(self, escrow_engine, sweeper, session_factory, make_user):
        sender, receiver = make_user("Sender"), make_user("Receiver")
        done = escrow_engine.create_transaction(sender.id, receiver.id, 10, CONDITIONS, 1)
        escrow_engine.accept_transaction(done.id, receiver.id)
        escrow_engine.update_condition(done.id, 0, True, sender.id)
        fresh = escrow_engine.create_transaction(sender.id, receiver.id, 10, CONDITIONS, 24)
        backdate(session_factory, done.id, created_at=get_naive_utc_now() - timedelta(hours=5))

        assert sweeper.sweep() == 0
        assert reload_transaction(session_factory, done.id).status == "completed"
        assert reload_transaction(session_factory, fresh.id).status == "pending"

    def test_sweep_expired_uses_current_time(self, escrow_engine, sweeper, session_factory, make_user):
        sender, receiver = make_user("Sender"), make_user("Receiver")
        transaction = escrow_engine.create_transaction(sender.id, receiver.id, 10, CONDITIONS, 1)
        backdate(session_factory, transaction.id, created_at=get_naive_utc_now() - timedelta(hours=2))

        assert sweeper.sweep_expired() == 1
        assert reload_transaction(session_factory, transaction.id).status == "cancelled"

    def test_pages_through_long_running_transactions(self, escrow_engine, sweeper, session_factory, make_user):
        """Full pages of not-yet-expired candidates do not end the sweep early"""
        sender, receiver = make_user("Sender"), make_user("Receiver")
        now = get_naive_utc_now()
        running = [
            escrow_engine.create_transaction(sender.id, receiver.id, 10, CONDITIONS, 48).id
            for _ in range(3)
        ]
        for n, transaction_id in enumerate(running):
            backdate(session_factory, transaction_id, created_at=now - timedelta(hours=10, minutes=n))
        overdue = escrow_engine.create_transaction(sender.id, receiver.id, 10, CONDITIONS, 1)
        backdate(session_factory, overdue.id, created_at=now - timedelta(hours=2))

        assert sweeper.sweep(now) == 1
        assert reload_transaction(session_factory, overdue.id).status == "cancelled"
        assert all(reload_transaction(session_factory, t).status == "pending" for t in running)
