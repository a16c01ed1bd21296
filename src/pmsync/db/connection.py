from __future__ import annotations
import os
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

load_dotenv()


def build_db_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    host = os.getenv("DB_HOST", "localhost")
    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "pmsync")
    user = os.getenv("DB_USER", "pmsync")
    pwd = os.getenv("DB_PASSWORD", "pmsync")
    return f"postgresql+psycopg://{user}:{pwd}@{host}:{port}/{name}"


def get_engine(url: str | None = None) -> Engine:
    return create_engine(url or build_db_url(), future=True, pool_pre_ping=True)
