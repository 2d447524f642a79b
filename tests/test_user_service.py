"""Tests for user registration and unread bookkeeping"""

from decimal import Decimal

import pytest

from conftest import reload_user
from services.user_service import UserService, mark_unread
from utils.escrow_errors import InvalidArgument, NotFound


class TestRegistration:

    def test_register_assigns_vid_and_starting_balance(self, user_service):
        user = user_service.register_user("Wanjiku", " Wanjiku@Example.com ", phone="+254700000000")

        assert len(user.vault_id) == 8
        assert user.vault_id.isupper() or user.vault_id.isdigit()
        assert user.email == "wanjiku@example.com"
        assert user.balance == Decimal("1000.00")
        assert user.escrow_balance == Decimal("0.00")
        assert user.unread_transaction_ids == []

    def test_custom_starting_balance(self, session_factory):
        service = UserService(session_factory, starting_balance=Decimal("25.00"))
        assert service.register_user("Otieno", "otieno@example.com").balance == Decimal("25.00")

    @pytest.mark.parametrize("name,email", [("", "a@b.c"), ("Name", ""), ("Name", "not-an-email")])
    def test_invalid_input(self, user_service, name, email):
        with pytest.raises(InvalidArgument):
            user_service.register_user(name, email)

    def test_duplicate_email(self, user_service):
        user_service.register_user("First", "dup@example.com")
        with pytest.raises(InvalidArgument) as exc_info:
            user_service.register_user("Second", "DUP@example.com")
        assert exc_info.value.error_code == "email_taken"


class TestLookup:

    def test_by_id_and_vid(self, user_service, make_user):
        user = make_user("Alice")
        assert user_service.get_user(user.id).vault_id == user.vault_id
        assert user_service.get_by_vault_id(user.vault_id.lower()).id == user.id

    def test_missing(self, user_service):
        with pytest.raises(NotFound):
            user_service.get_user("missing")
        with pytest.raises(NotFound):
            user_service.get_by_vault_id("ZZZZZZZZ")


class TestUnread:

    def test_mark_unread_is_idempotent(self, make_user):
        user = make_user("Alice")
        mark_unread([user], "tx-1")
        mark_unread([user], "tx-1")
        mark_unread([user], "tx-2")
        assert user.unread_transaction_ids == ["tx-1", "tx-2"]

    def test_clear_unread(self, escrow_engine, user_service, session_factory, make_user):
        sender, receiver = make_user("Sender"), make_user("Receiver")
        first = escrow_engine.create_transaction(sender.id, receiver.id, 10, ["Deliver"], 1)
        second = escrow_engine.create_transaction(sender.id, receiver.id, 10, ["Deliver"], 1)

        user_service.clear_unread(receiver.id, first.id)

        assert reload_user(session_factory, receiver.id).unread_transaction_ids == [second.id]

    def test_clear_unknown_user(self, user_service):
        with pytest.raises(NotFound):
            user_service.clear_unread("missing", "tx-1")
