import hashlib
import logging
import time
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine

logger = logging.getLogger("artmint")


class ShortUrl(SQLModel, table=True):
    short_id: str = Field(primary_key=True)
    url: str
    created_at: float = Field(default_factory=lambda: time.time())


def create_store_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database.
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url)


def short_id_for(url: str) -> str:
    return hashlib.md5(url.encode()).hexdigest()


class ContentStore:
    """Maps short ids to the image URLs that end up as NFT metadata URIs."""

    def __init__(self, engine: Engine):
        self.engine = engine
        SQLModel.metadata.create_all(engine)

    def shorten(self, url: str) -> str:
        short_id = short_id_for(url)
        with Session(self.engine) as session:
            if session.get(ShortUrl, short_id) is None:
                session.add(ShortUrl(short_id=short_id, url=url))
                session.commit()
                logger.info("short_url_created id=%s", short_id)
        return short_id

    def resolve(self, short_id: str) -> Optional[str]:
        with Session(self.engine) as session:
            row = session.get(ShortUrl, short_id)
            return row.url if row else None
