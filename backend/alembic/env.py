"""
Alembic environment for the checkout schema.

The application talks to PostgreSQL through asyncpg; migrations run on the
synchronous DATABASE_URL_SYNC driver instead. Pass ``-x db_url=...`` to point
a single run at another database (e.g. a restored snapshot) without touching
the environment.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from sparkpay.core.config import get_settings
from sparkpay.db.base import Base
import sparkpay.models  # noqa: F401 - registers every table on Base.metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    override = context.get_x_argument(as_dictionary=True).get("db_url")
    return override or get_settings().DATABASE_URL_SYNC


def _configure_kwargs() -> dict:
    # Counter columns and CHECK constraints change type/defaults more often
    # than names, so autogenerate has to compare them too
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "compare_server_default": True,
        "transaction_per_migration": True,
    }


def run_migrations_offline() -> None:
    """Emit the migration SQL to stdout for review by the DBA."""
    context.configure(
        url=_database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = _database_url()
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_kwargs())
        with context.begin_transaction():
            context.run_migrations()

    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
