"""User model - the account the ledger references.

The ledger does not own users; it only references them by id. This model
carries the columns the ledger and its admin surface read.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from quota_ledger.models.base import Base, TimestampMixin

_DEFAULT_UUID = text("gen_random_uuid()")


class User(Base, TimestampMixin):
    """User account.

    Attributes:
        id: UUID primary key.
        email: Unique email address.
        name: Display name.
        is_admin: Whether the user may call admin endpoints.
        token_invalidated_before: JWTs issued before this are rejected.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    is_admin: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    token_invalidated_before: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
