"""
Alembic environment configuration for Tether database migrations.

The connection URL comes from ``src.models.base.DATABASE_URL`` so migrations
and the application always agree on the target database.
"""

from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context

from src.models.base import DATABASE_URL, Base
from src.models.user import User  # noqa: F401
from src.models.quiz import Quiz  # noqa: F401
from src.models.therapist_profile import TherapistProfile  # noqa: F401
from src.models.appointment import Appointment  # noqa: F401
from src.models.quiz_assignment import TherapistQuizAssignment  # noqa: F401
from src.models.conversation import TherapyConversation, TherapyMessage  # noqa: F401
from src.models.audit_log import AuditLog  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

config.set_main_option("sqlalchemy.url", DATABASE_URL)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit SQL for the configured URL without connecting."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,  # SQLite ALTER TABLE
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations against a live connection."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
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
