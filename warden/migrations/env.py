"""Alembic environment bound to the application's DATABASE_URL."""

from alembic import context
from sqlalchemy import create_engine

from warden.config import load_settings
from warden.models import Base

settings = load_settings()


def run_migrations_online() -> None:
    connectable = create_engine(settings.database_url, future=True)
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=Base.metadata)
        with context.begin_transaction():
            context.run_migrations()


def run_migrations_offline() -> None:
    context.configure(url=settings.database_url, target_metadata=Base.metadata, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
