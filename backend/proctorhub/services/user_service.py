from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select
from typing import List, Optional

from ..models.user import User, UserRole


class UserService:
    """Account access; logins happen elsewhere, accounts are provisioned by admin_tools"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).filter(User.email == email))
        return result.scalars().first()

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        return await self.db.get(User, user_id)

    async def list_users(self, role: Optional[str] = None) -> List[User]:
        query = select(User)
        if role:
            query = query.filter(User.role == role)
        result = await self.db.execute(query.order_by(User.id))
        return list(result.scalars().all())

    async def create_user(self, email: str, full_name: str, role: str = UserRole.STUDENT) -> User:
        if role not in (UserRole.STUDENT, UserRole.INSTRUCTOR, UserRole.ADMIN):
            raise ValueError(f"Unknown role '{role}'")
        db_user = User(full_name=full_name, email=email, role=role)
        self.db.add(db_user)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ValueError("Email already registered")
        await self.db.refresh(db_user)
        return db_user
