from sqlmodel import create_engine, SQLModel
from . import models  # noqa: F401  registers the tables
from . import settings
from .logging_utils import get_logger, setup_logging

logger = get_logger("logo_hunt.init_db")


def init_db(url: str = settings.DATABASE_URL):
    engine = create_engine(url, **settings.engine_kwargs(url))
    SQLModel.metadata.create_all(engine)
    logger.info("db_initialized", extra={"path": url})
    return engine


if __name__ == '__main__':
    setup_logging()
    init_db()
