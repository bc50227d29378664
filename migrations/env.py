from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from config import Config
from lojasocial import models  # noqa: F401 - registers the stock tables
from lojasocial.extensions import db

alembic_config = context.config

if alembic_config.config_file_name is not None:
    fileConfig(alembic_config.config_file_name)

target_metadata = db.Model.metadata


def _stock_database_url() -> str:
    """Pick the URL from ``-x db_url=...``, then alembic.ini, then ``Config``.

    ``env://NAME`` in alembic.ini defers to the application config, which
    already reads ``DB_URL`` from the environment.
    """

    override = context.get_x_argument(as_dictionary=True).get("db_url")
    if override:
        return override
    configured = alembic_config.get_main_option("sqlalchemy.url")
    if configured and not configured.startswith("env://"):
        return configured
    return Config.SQLALCHEMY_DATABASE_URI


def _configure(**options) -> None:
    url = options.get("url") or str(options["connection"].engine.url)
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite needs table rebuilds for constraint changes on lots and moves.
        render_as_batch=url.startswith("sqlite"),
        **options,
    )


if context.is_offline_mode():
    _configure(
        url=_stock_database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()
else:
    engine = create_engine(_stock_database_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()
