import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import cfg
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)


def _resolve_db_url() -> str:
    return str(os.getenv("DB_URL") or cfg.get("db", "sqlite:///data/billing.db"))


class Db:
    def __init__(self, url: str = None):
        self.url = url or _resolve_db_url()
        self._engine = None
        self._session_factory = None

    @property
    def engine(self):
        if self._engine is None:
            kwargs = {}
            if self.url.startswith("sqlite"):
                kwargs["connect_args"] = {"check_same_thread": False}
                path = self.url.replace("sqlite:///", "", 1)
                if self.url in ("sqlite://", "sqlite:///:memory:"):
                    # 内存库需要共享同一个连接，否则每个 session 都是空库
                    kwargs["poolclass"] = StaticPool
                elif os.path.dirname(path):
                    os.makedirs(os.path.dirname(path), exist_ok=True)
            self._engine = create_engine(self.url, **kwargs)
        return self._engine

    def get_session(self):
        if self._session_factory is None:
            self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._session_factory()

    def create_tables(self):
        from core.models.base import Base
        import core.models  # noqa: F401  注册全部模型

        Base.metadata.create_all(self.engine)
        log_event(logger, E.SYSTEM_DB_INIT, level="debug", url=self.url.split("@")[-1])

    def drop_tables(self):
        from core.models.base import Base
        import core.models  # noqa: F401

        Base.metadata.drop_all(self.engine)


DB = Db()
