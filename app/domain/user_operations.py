import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User

logger = logging.getLogger(__name__)


class UserOperations:
    """Operations for User model."""

    async def get_by_id(
        self,
        db: AsyncSession,
        user_id: str,
    ) -> User | None:
        """Get a user by ID."""
        statement = select(User).where(User.id == user_id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_or_create(
        self,
        db: AsyncSession,
        user_id: str,
        email: str | None = None,
        display_name: str | None = None,
    ) -> User:
        """Get a user, creating the record on first sight of the identity."""
        user = await self.get_by_id(db, user_id)
        if user:
            if email and user.email != email:
                user.email = email
                db.add(user)
                await db.flush()
            return user

        user = User(id=user_id, email=email, display_name=display_name)
        db.add(user)
        await db.flush()
        await db.refresh(user)
        logger.info(f"Created user record for {user_id}")
        return user


user_ops = UserOperations()
