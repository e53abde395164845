"""Transaction category model."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from transfer_engine.database import Base
from transfer_engine.models.base import UserOwnedMixin, UUIDMixin


class Category(UUIDMixin, UserOwnedMixin, Base):
    """Category assigned to transactions by the external categoriser."""

    __tablename__ = "categories"

    name: Mapped[str] = mapped_column(String(120), nullable=False)

    def __repr__(self) -> str:
        return f"<Category {self.name}>"
