"""Alembic environment configuration.

Migrates the workflow, workflow_version, execution and dead_letter tables.
The URL comes from ``alembic -x url=...``, then ``sqlalchemy.url`` in the
ini file, then ``DATABASE_URL_SYNC`` via the application settings.
"""

from logging.config import fileConfig

from dotenv import load_dotenv
from sqlalchemy import create_engine, pool
from sqlalchemy.engine import Connection
from sqlmodel import SQLModel

from alembic import context

load_dotenv()

from genflow.config import get_settings  # noqa: E402
from genflow.models.dead_letter import DeadLetter  # noqa: E402,F401
from genflow.models.execution import Execution  # noqa: E402,F401
from genflow.models.workflow import Workflow, WorkflowVersion  # noqa: E402,F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata


def get_url() -> str:
    """Resolve the synchronous database URL for migrations."""
    url = context.get_x_argument(as_dictionary=True).get("url")
    if url:
        return url
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url
    return get_settings().database_url_sync


def configure_context(**kwargs) -> None:
    # Batch mode lets the same scripts alter tables on SQLite.
    context.configure(
        target_metadata=target_metadata,
        render_as_batch=True,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit migration SQL to the script output without connecting."""
    configure_context(
        url=get_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    configure_context(connection=connection)

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations against a live connection."""
    connectable = create_engine(get_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        do_run_migrations(connection)

    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
