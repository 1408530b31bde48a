"""
Alembic Environment Configuration
==================================

Runs migrations against the meterbill billing database.
The sqlalchemy.url is overridden at runtime by meterbill.core.database
so the value in alembic.ini is only a fallback for CLI usage.
"""

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

# Import all billing models so their tables are registered on metadata
from meterbill.models.billing import (  # noqa: F401
    AuditLog,
    BillingAccount,
    Invoice,
    PaymentEventRecord,
    UsageRecord,
    WalletTransaction,
)

config = context.config

# CLI runs take the URL from the env var; init_db() sets it explicitly
database_url = os.environ.get("METERBILL_DATABASE_URL")
if database_url and not config.attributes.get("url_from_app"):
    config.set_main_option("sqlalchemy.url", database_url)

# The app configures structured logging itself; only the CLI needs alembic.ini's
if config.config_file_name is not None and not logging.getLogger().handlers:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (emit SQL to stdout)."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (connect to DB)."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
