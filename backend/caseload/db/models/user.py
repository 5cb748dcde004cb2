from sqlalchemy import String, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from enum import Enum

from caseload.db.base import Base
from caseload.db.models._mixins import TimestampMixin

class Role(str, Enum):
    admin = "ADMIN"
    data_entry = "DATA_ENTRY"
    viewer = "VIEWER"
    system = "SYSTEM"

class User(Base, TimestampMixin):
    __tablename__ = "app_user"

    id: Mapped[int] = mapped_column(primary_key=True)
    login: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    full_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    role: Mapped[str] = mapped_column(String(32), default=Role.data_entry.value)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
