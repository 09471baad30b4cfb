"""
Single async engine and session factory for reviewer-finder.

The FastAPI app (get_db), discovery runs and enrichment batches share the same
connection pool. One session = one connection from the pool; sessions are closed
after each request/run so connections return to the pool.
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from reviewer_finder.config import DATABASE_URL

# Connection timeout (seconds) so a dead DB doesn't hang a discovery run
_connect_args = {"timeout": 15} if "asyncpg" in DATABASE_URL else {}
engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    connect_args=_connect_args,
    pool_size=5,
    max_overflow=5,
    pool_pre_ping=True,
    pool_recycle=300,
)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
