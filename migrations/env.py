"""Alembic environment for the GeoClips schema.

The URL always comes from GEOCLIPS_DATABASE_URL via config, never from
alembic.ini, so migrations run against the same store as the API servers.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

import config as app_config
from api.database import metadata as target_metadata

alembic_cfg = context.config

if alembic_cfg.config_file_name is not None:
    fileConfig(alembic_cfg.config_file_name)

DB_URL = app_config.DATABASE_URL
alembic_cfg.set_main_option("sqlalchemy.url", DB_URL)


def _configure(**kwargs) -> None:
    # SQLite can only ALTER through copy-and-move batch operations
    context.configure(
        target_metadata=target_metadata,
        render_as_batch=DB_URL.startswith("sqlite"),
        **kwargs,
    )


if context.is_offline_mode():
    _configure(url=DB_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()
else:
    engine = create_engine(DB_URL, poolclass=pool.NullPool)
    with engine.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()
    engine.dispose()
