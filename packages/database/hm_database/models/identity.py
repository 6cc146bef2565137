from datetime import UTC, datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel


class User(SQLModel, table=True):
    """
    Local mirror of a GitHub account.
    registered=False marks a shadow user: created from a payload, refreshed
    opportunistically, never overwritten once the person signs in.
    """

    __tablename__ = "users"
    __table_args__ = {"schema": "public"}

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(
        sa_column=sa.Column(sa.BigInteger, unique=True, nullable=False, index=True)
    )
    login: str = Field(index=True)
    name: Optional[str] = Field(default=None)
    email: Optional[str] = Field(default=None)
    avatar_url: Optional[str] = Field(default=None)
    registered: bool = Field(
        default=False,
        sa_column=sa.Column(sa.Boolean, server_default=sa.false(), nullable=False),
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=sa.Column(
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=sa.Column(
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
