import asyncio
import os
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config
from sqlmodel import SQLModel
from dotenv import load_dotenv

from alembic import context

import hm_database.models  # noqa: F401
from hm_database.session import normalize_database_url

project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../../.."))
load_dotenv(os.path.join(project_root, ".env.local"))
load_dotenv(os.path.join(project_root, ".env"))


config = context.config

# Migrations prefer DIRECT_DATABASE_URL so DDL bypasses any pooler
database_url = normalize_database_url(
    os.getenv("DIRECT_DATABASE_URL") or os.getenv("DATABASE_URL", "")
)
# Escape percent signs to prevent parsing issues
config.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata


def _compare_type(
    context, inspected_column, metadata_column, inspected_type, metadata_type
):
    """Treats SQLModel's AutoString and TEXT/VARCHAR as the same type.

    Without this, autogenerate reports a perpetual cosmetic diff for every
    column the models declare as ``str``.
    """
    from sqlmodel.sql.sqltypes import AutoString  # noqa: F811
    import sqlalchemy.types as satypes

    is_inspected_text = isinstance(inspected_type, (satypes.Text, satypes.String))
    is_metadata_auto = isinstance(metadata_type, AutoString)
    if is_inspected_text and is_metadata_auto:
        return False

    is_inspected_auto = isinstance(inspected_type, AutoString)
    is_metadata_text = isinstance(metadata_type, (satypes.Text, satypes.String))
    if is_inspected_auto and is_metadata_text:
        return False

    return None


def include_object(obj, name, type_, reflected, compare_to):
    """Hides public-schema foreign keys from autogenerate.

    With include_schemas=True PostgreSQL reflects public-schema FK targets
    without the 'public.' prefix while the models spell it out, which shows up
    as a permanent diff (users.id vs public.users.id).
    """
    if type_ == "foreign_key_constraint":
        table = getattr(obj, "parent", None)
        schema = getattr(table, "schema", None) if table is not None else None
        if schema is None or schema == "public":
            return False
    return True


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_schemas=True,
        include_object=include_object,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=_compare_type,
        include_schemas=True,
        include_object=include_object,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    # Disable prepared statement caching for PgBouncer compatibility
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        connect_args={
            "prepared_statement_cache_size": 0,
            "statement_cache_size": 0,
        },
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
