"""Alembic environment configuration.

The SQLite URL comes from ``sqlalchemy.url``; ``agent_tasks.storage.alembic_runner``
overrides it per database. Tables are declared in ``storage.sqlmodel_models``.
"""

from __future__ import annotations

import os

from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

from agent_tasks.storage import sqlmodel_models  # noqa: F401
from alembic import context

config = context.config

target_metadata = SQLModel.metadata


def get_url() -> str:
    url = config.get_main_option("sqlalchemy.url", "")
    if not url:
        url = os.environ.get("AGENT_TASKS_DATABASE_URL", "")
    if not url:
        raise RuntimeError(
            "Database URL is not configured. "
            "Set AGENT_TASKS_DATABASE_URL or sqlalchemy.url in alembic.ini.",
        )
    return url


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (generates SQL script)."""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (connects to the database)."""
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = get_url()
    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
