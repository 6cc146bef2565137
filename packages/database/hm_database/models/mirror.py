from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from hm_database.models.columns import fk_column, github_id_column, timestamp_column


class Installation(SQLModel, table=True):
    __tablename__ = "installations"
    __table_args__ = {"schema": "mirror"}

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    account_login: str
    account_type: str = Field(default="User")
    suspended: bool = Field(default=False)
    created_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column(server_now=True))


class Repository(SQLModel, table=True):
    """Onboarded repository; deleting it cascades to every mirrored child row"""

    __tablename__ = "repositories"
    __table_args__ = {"schema": "mirror"}

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    installation_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("mirror.installations.id", nullable=True, ondelete="SET NULL"),
    )
    name: str
    owner: str = Field(index=True)
    full_name: str = Field(index=True, unique=True)
    description: Optional[str] = Field(default=None)
    html_url: Optional[str] = Field(default=None)
    private: bool = Field(default=False)
    archived: bool = Field(default=False)
    sync_enabled: bool = Field(default=True)
    last_synced_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    created_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column(server_now=True))


class RepositoryCollaborator(SQLModel, table=True):
    __tablename__ = "repository_collaborators"
    __table_args__ = {"schema": "mirror"}

    repository_id: int = Field(sa_column=fk_column("mirror.repositories.id", primary_key=True))
    user_id: int = Field(sa_column=fk_column("public.users.id", primary_key=True))
    permission: str = Field(default="write")


class Label(SQLModel, table=True):
    __tablename__ = "labels"
    __table_args__ = {"schema": "mirror"}

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    repository_id: int = Field(sa_column=fk_column("mirror.repositories.id"))
    name: str
    color: Optional[str] = Field(default=None)
    description: Optional[str] = Field(default=None)


class Milestone(SQLModel, table=True):
    __tablename__ = "milestones"
    __table_args__ = {"schema": "mirror"}

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    repository_id: int = Field(sa_column=fk_column("mirror.repositories.id"))
    number: int
    title: str
    description: Optional[str] = Field(default=None)
    state: str = Field(default="open")
    due_on: Optional[datetime] = Field(default=None, sa_column=timestamp_column())


class Release(SQLModel, table=True):
    __tablename__ = "releases"
    __table_args__ = {"schema": "mirror"}

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    repository_id: int = Field(sa_column=fk_column("mirror.repositories.id"))
    author_id: Optional[int] = Field(
        default=None,
        sa_column=fk_column("public.users.id", nullable=True, ondelete="SET NULL"),
    )
    tag_name: str
    name: Optional[str] = Field(default=None)
    body: Optional[str] = Field(default=None, sa_column=sa.Column(sa.Text))
    draft: bool = Field(default=False)
    prerelease: bool = Field(default=False)
    html_url: Optional[str] = Field(default=None)
    published_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
