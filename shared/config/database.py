import os
import uuid
from datetime import datetime, timezone

from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

load_dotenv()

DB_USER = os.getenv("POSTGRES_USER", "postgres")
DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
DB_HOST = os.getenv("POSTGRES_HOST", "localhost") # In Docker, this will be 'postgres'
DB_PORT = os.getenv("POSTGRES_PORT", "5433")
DB_NAME = os.getenv("POSTGRES_DB", "healthcare_marketplace")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+asyncpg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"

# One schema per service to keep the data of each service isolated
SERVICE_SCHEMAS = ("order_schema", "payment_schema", "pricing_schema", "settlement_schema")


def build_engine(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine. SQLite has no schemas, so they are translated away."""
    if url.startswith("sqlite"):
        kwargs.setdefault(
            "execution_options",
            {"schema_translate_map": {schema: None for schema in SERVICE_SCHEMAS}},
        )
    return create_async_engine(url, echo=SQL_ECHO, **kwargs)


engine = build_engine(DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with values read back from any backend."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def create_schemas(target: AsyncEngine = engine):
    async with target.begin() as conn:
        if conn.dialect.name == "postgresql":
            for schema in SERVICE_SCHEMAS:
                await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema}"))
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
