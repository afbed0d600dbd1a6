from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

import config


def build_engine(url: str):
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        # 内存库只能共用一个连接
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=False, **kwargs)
    return create_engine(url, echo=False, pool_pre_ping=True)


engine = build_engine(config.DATABASE_URL)


def create_db_and_tables(bind=None) -> None:
    import models  # noqa: F401  注册表结构

    SQLModel.metadata.create_all(bind or engine)


def get_session():
    with Session(engine) as db_sess:
        yield db_sess
