from __future__ import annotations

from logging.config import fileConfig

from alembic import context

from budgetbook import models  # noqa: F401 - registers every table on Base.metadata
from budgetbook.core.config import settings
from budgetbook.core.database import Base, engine


if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)

OPTIONS = {
    "target_metadata": Base.metadata,
    "compare_type": True,
    "render_as_batch": settings.DATABASE_URL.startswith("sqlite"),
}


if context.is_offline_mode():
    context.configure(url=settings.DATABASE_URL, literal_binds=True, **OPTIONS)
    with context.begin_transaction():
        context.run_migrations()
else:
    # Same engine as the application, so SQLite pragmas apply during upgrades too
    with engine.connect() as connection:
        context.configure(connection=connection, **OPTIONS)
        with context.begin_transaction():
            context.run_migrations()
