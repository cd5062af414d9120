import asyncio

import pytest

from questweave.database import build_sessionmaker, create_engine_for, create_schema

MEMORY_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def run_db():
    """Run ``body(Session)`` against a fresh in-memory database."""

    def runner(body):
        async def main():
            engine = create_engine_for(MEMORY_URL)
            await create_schema(engine)
            try:
                return await body(build_sessionmaker(engine))
            finally:
                await engine.dispose()

        return asyncio.run(main())

    return runner
