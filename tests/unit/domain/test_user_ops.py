"""Tests for UserOperations - identity records."""

from app.domain.user_operations import user_ops


class TestGetOrCreate:
    async def test_creates_on_first_sight(self, db_session):
        user = await user_ops.get_or_create(
            db_session, "user_new", email="new@example.com", display_name="New"
        )

        assert user.id == "user_new"
        assert (await user_ops.get_by_id(db_session, "user_new")) is user

    async def test_returns_existing_and_refreshes_email(self, db_session, test_user):
        user = await user_ops.get_or_create(db_session, "user_test_1", email="ada@new.example")

        assert user.id == test_user.id
        assert user.email == "ada@new.example"

    async def test_keeps_email_when_none_given(self, db_session, test_user):
        user = await user_ops.get_or_create(db_session, "user_test_1")
        assert user.email == "ada@example.com"

    async def test_unknown_user(self, db_session):
        assert await user_ops.get_by_id(db_session, "nobody") is None
