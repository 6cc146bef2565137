"""Column factories shared by the mirror models; each call returns a fresh Column"""

import sqlalchemy as sa


def fk_column(
    target: str,
    *,
    nullable: bool = False,
    ondelete: str = "CASCADE",
    index: bool = True,
    primary_key: bool = False,
) -> sa.Column:
    return sa.Column(
        sa.Integer,
        sa.ForeignKey(target, ondelete=ondelete),
        nullable=nullable,
        index=index and not primary_key,
        primary_key=primary_key,
    )


def github_id_column(*, unique: bool = True) -> sa.Column:
    return sa.Column(sa.BigInteger, unique=unique, nullable=False, index=True)


def timestamp_column(*, nullable: bool = True, server_now: bool = False, index: bool = False) -> sa.Column:
    return sa.Column(
        sa.DateTime(timezone=True),
        server_default=sa.func.now() if server_now else None,
        nullable=nullable,
        index=index,
    )
