"""Test configuration."""
import os
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path
from uuid import uuid4

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Connection
from sqlalchemy.orm import Session, sessionmaker

# --- Default environment for the test run
os.environ.setdefault("DATABASE_URL", "sqlite:///./readshare_test.db")
os.environ.setdefault("DEV_API_KEY", "test-secret-key")
os.environ.setdefault("SECRET_KEY", "test-hmac-secret")
os.environ.setdefault("RS_ENV", "test")

from readshare.main import app  # noqa: E402
from readshare.db import get_db  # noqa: E402
from readshare.models.api_key import ApiKey, ApiScope  # noqa: E402
from readshare.models.base import Base  # noqa: E402
from readshare.models.user import UserProfile  # noqa: E402
from readshare.services import changes  # noqa: E402
from readshare.utils.apikey import hash_key  # noqa: E402

DB_PATH = Path("./readshare_test.db")


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- (1) Fresh database file per session
if DB_PATH.exists():
    DB_PATH.unlink()

engine = create_engine(
    os.environ["DATABASE_URL"],
    connect_args={"check_same_thread": False},
    future=True,
)


@event.listens_for(engine, "connect")
def _disable_pysqlite_begin(dbapi_connection, connection_record) -> None:
    # pysqlite must leave BEGIN to SQLAlchemy or SAVEPOINT misbehaves.
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _emit_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN")


# Service commits and rollbacks stay inside a SAVEPOINT of the test transaction.
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True,
                                   expire_on_commit=False, join_transaction_mode="create_savepoint")

# --- (2) Schema comes from Alembic only
_run_migrations()
changes.install_change_capture()


@pytest.fixture
def db_connection() -> Iterator[Connection]:
    connection = engine.connect()
    transaction = connection.begin()
    try:
        yield connection
    finally:
        transaction.rollback()
        connection.close()


@pytest.fixture
def db_session(db_connection: Connection) -> Iterator[Session]:
    session = TestingSessionLocal(bind=db_connection)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory(db_connection: Connection) -> Callable[[], Session]:
    """Fresh sessions sharing the test transaction, as a worker would open them."""

    return lambda: TestingSessionLocal(bind=db_connection)


@pytest.fixture
def isolated_sessionmaker(tmp_path: Path) -> Iterator[sessionmaker[Session]]:
    """Sessions with their own connections on a private database file, for multi-threaded tests."""

    file_engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrent.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )

    @event.listens_for(file_engine, "connect")
    def _no_pysqlite_begin(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(file_engine, "begin")
    def _begin_immediate(conn) -> None:
        # Writers queue on the database lock instead of failing a lock upgrade.
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(file_engine)
    try:
        yield sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False, future=True)
    finally:
        file_engine.dispose()


@pytest.fixture(autouse=True)
def override_db_dependency(db_session: Session) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session
    app.dependency_overrides[get_db] = _get_db
    yield
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture(autouse=True)
def fresh_change_feed(monkeypatch) -> changes.ChangeFeed:
    feed = changes.ChangeFeed(queue_size=16)
    monkeypatch.setattr(changes, "_feed", feed)
    return feed


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {os.environ['DEV_API_KEY']}"}


@pytest.fixture
def make_user(db_session: Session) -> Callable[..., UserProfile]:
    def _factory(full_name: str | None = None, *, email: str | None = None, is_active: bool = True) -> UserProfile:
        user = UserProfile(
            email=email or f"user-{uuid4().hex[:10]}@example.com",
            full_name=full_name,
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _factory


@pytest.fixture
def make_api_key(db_session: Session) -> Callable[..., ApiKey]:
    def _factory(
        name: str,
        key: str,
        scope: ApiScope = ApiScope.user,
        is_active: bool = True,
        user: UserProfile | None = None,
    ) -> ApiKey:
        api_key = ApiKey(
            name=name,
            prefix="test_" + scope.value,
            key_hash=hash_key(key),
            scope=scope,
            user_id=user.id if user is not None else None,
            is_active=is_active,
        )
        db_session.add(api_key)
        db_session.commit()
        db_session.refresh(api_key)
        return api_key

    return _factory


@pytest.fixture
def headers_for(make_api_key: Callable[..., ApiKey]) -> Callable[[UserProfile], dict[str, str]]:
    """Bearer headers for a user-scoped key bound to ``user``."""

    def _headers(user: UserProfile) -> dict[str, str]:
        token = f"user-{uuid4().hex}"
        make_api_key(name=f"user-{uuid4().hex}", key=token, scope=ApiScope.user, user=user)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def admin_headers(make_api_key: Callable[..., ApiKey]) -> dict[str, str]:
    token = f"admin-{uuid4().hex}"
    make_api_key(name=f"admin-{uuid4().hex}", key=token, scope=ApiScope.admin)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def service_headers(make_api_key: Callable[..., ApiKey]) -> dict[str, str]:
    token = f"service-{uuid4().hex}"
    make_api_key(name=f"service-{uuid4().hex}", key=token, scope=ApiScope.service)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
