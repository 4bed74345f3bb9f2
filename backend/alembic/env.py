"""Migration runner for the ledger schema.

``alembic.ini`` puts backend/ on sys.path (prepend_sys_path), so the app
package imports directly. The database comes from settings.DATABASE_URL,
never from the placeholder in the ini file.
"""
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.engine import make_url

import app.models  # noqa: F401  (tables register on Base.metadata)
from app.core.config import settings
from app.core.database import Base

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)

DATABASE_URL = settings.DATABASE_URL


def _configure_kwargs(dialect_name: str) -> dict:
    return {
        "target_metadata": Base.metadata,
        # column type changes (e.g. String length) show up in autogenerate
        "compare_type": True,
        # SQLite cannot ALTER most constraints in place
        "render_as_batch": dialect_name == "sqlite",
    }


def run_migrations_offline() -> None:
    """Write the SQL to stdout instead of executing it"""
    context.configure(
        url=DATABASE_URL,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(make_url(DATABASE_URL).get_backend_name()),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(DATABASE_URL, poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection, **_configure_kwargs(connection.dialect.name))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
