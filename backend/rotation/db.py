from collections.abc import Iterator

from sqlmodel import Session, SQLModel, create_engine

from rotation.settings import settings


def create_db_engine(db_url: str | None = None):
    url = db_url or settings.db_url
    connect_args = {}
    if url.startswith("sqlite:"):
        connect_args = {"check_same_thread": False}
    return create_engine(url, echo=False, connect_args=connect_args)


engine = create_db_engine()


def init_db() -> None:
    SQLModel.metadata.create_all(engine)


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session
