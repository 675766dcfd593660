import pytest
from httpx import ASGITransport, AsyncClient

from vault_access.core.database.engine import build_engine, build_session_factory, init_db
from vault_access.features.audit.service import AuditContext
from vault_access.features.mirror.discovery import CacheFreshness
from vault_access.features.mirror.lock import SyncLease
from vault_access.features.roles.provider import StaticRoleMembershipProvider
from vault_access.features.users.models import User
from vault_access.features.vault.services import VaultServices
from tests.fakes import FakeVaultConnector


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def roles():
    return StaticRoleMembershipProvider()


@pytest.fixture
def admin_ctx():
    return AuditContext(actor_id="admin", ip_address="127.0.0.1", user_agent="pytest")


@pytest.fixture
def make_user(session_factory):
    counter = {"n": 0}

    async def _make_user(name: str, is_admin: bool = False) -> User:
        counter["n"] += 1
        async with session_factory() as session:
            user = User(
                appwrite_id=f"aw-{name}-{counter['n']}",
                email=f"{name}{counter['n']}@example.com",
                name=name,
                is_admin=is_admin,
            )
            session.add(user)
            await session.commit()
            # Load server-side timestamps before the session closes
            await session.refresh(user)
            return user

    return _make_user


@pytest.fixture
def connector():
    return FakeVaultConnector()


@pytest.fixture
def lease(session_factory):
    return SyncLease(session_factory, ttl_seconds=60)


@pytest.fixture
def services(session_factory, connector, lease):
    return VaultServices.build(
        session_factory,
        connector=connector,
        freshness=CacheFreshness(assets_ttl_seconds=3600, categories_ttl_seconds=3600),
        lease=lease,
        page_size=2,
        delay_ms=0,
    )


@pytest.fixture
async def app(session_factory, roles, services):
    """The FastAPI app wired to the test database, fake vault, and static roles."""
    from vault_access.core.database.engine import get_db
    from vault_access.core.limiter import limiter
    from vault_access.features.roles.dependencies import get_role_provider
    from vault_access.main import app

    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_role_provider] = lambda: roles
    app.state.vault = services
    limiter.enabled = False
    yield app
    app.dependency_overrides.clear()
    app.state.vault = None
    limiter.enabled = True


@pytest.fixture
def login(app):
    """Make every request authenticate as ``user``."""
    from vault_access.features.users.dependencies import get_current_admin_user, get_current_user

    def _login(user: User):
        app.dependency_overrides[get_current_user] = lambda: user
        if user.is_admin:
            app.dependency_overrides[get_current_admin_user] = lambda: user
        else:
            app.dependency_overrides.pop(get_current_admin_user, None)

    return _login


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
