"""Alembic environment; the DSN comes from `POSTGRES_DSN` via settings."""

import asyncio

from alembic import context

from shopcore.common.db import Base, engine
from shopcore.services.inventory import models as inventory_models  # noqa: F401
from shopcore.services.notifications import models as notification_models  # noqa: F401
from shopcore.services.orders import models as order_models  # noqa: F401
from shopcore.services.payments import models as payment_models  # noqa: F401
from shopcore.services.reservations import models as reservation_models  # noqa: F401
from shopcore.services.webhooks import models as webhook_models  # noqa: F401

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(url=str(engine.url), target_metadata=target_metadata, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def _run_sync(connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    async with engine.connect() as connection:
        await connection.run_sync(_run_sync)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
