import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from servicebook.domain.admin_audit import db_models as admin_audit_models  # noqa: F401
from servicebook.domain.bookings import db_models as booking_models  # noqa: F401
from servicebook.domain.config import db_models as config_models  # noqa: F401
from servicebook.domain.ops import db_models as ops_models  # noqa: F401
from servicebook.domain.outbox import db_models as outbox_models  # noqa: F401
from servicebook.domain.payments import db_models as payment_models  # noqa: F401
from servicebook.domain.workers import db_models as worker_models  # noqa: F401
from servicebook.infra.db import Base
from servicebook.settings import settings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)
config.set_main_option("sqlalchemy.url", settings.database_url)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
