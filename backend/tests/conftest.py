import os

# Must be set before marketplace.database is imported.
os.environ.setdefault("PYTEST_RUN", "1")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from pathlib import Path
from dotenv import load_dotenv
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
import pytest

# Load environment variables for tests
load_dotenv(Path(__file__).resolve().parents[1] / '.env.test')

from marketplace.api.auth import create_access_token  # noqa: E402
from marketplace.api.dependencies import (  # noqa: E402
    get_booking_store,
    get_db,
    get_event_hub,
    get_state_machine,
    get_user_directory,
)
from marketplace.crud.crud_booking import BookingStore  # noqa: E402
from marketplace.crud.crud_review import ReviewRepository  # noqa: E402
from marketplace.crud.crud_user import UserDirectory  # noqa: E402
from marketplace.main import app  # noqa: E402
from marketplace.models import User, UserType  # noqa: E402
from marketplace.models.base import BaseModel  # noqa: E402
from marketplace.realtime.events import BookingEventHub  # noqa: E402
from marketplace.services.booking_state_machine import BookingStateMachine  # noqa: E402
from marketplace.services.conversation_bridge import SqlConversationBridge  # noqa: E402
from marketplace.utils.auth import get_password_hash  # noqa: E402
from stripe_mocks import FakeStripe  # noqa: E402


@pytest.fixture(autouse=True)
def clear_dependency_overrides():
    """Never leak FastAPI overrides from one test into the next."""
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def session_factory(tmp_path):
    # File-backed so worker threads (TestClient, concurrent writers) share one database.
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    BaseModel.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


def _make_user(Session, email, user_type=UserType.CLIENT, payout_account_id=None, password="secret"):
    db = Session()
    user = User(
        email=email,
        password=get_password_hash(password),
        first_name=email.split("@")[0].title(),
        last_name="Test",
        user_type=user_type,
        payout_account_id=payout_account_id,
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    db.close()
    return user


@pytest.fixture
def make_user(session_factory):
    return lambda email, *args, **kwargs: _make_user(session_factory, email, *args, **kwargs)


@pytest.fixture
def users(session_factory):
    """A client, a payout-ready provider and an unrelated third party."""
    return {
        "client": _make_user(session_factory, "client@test.com"),
        "provider": _make_user(
            session_factory, "provider@test.com", UserType.SERVICE_PROVIDER, payout_account_id="acct_123"
        ),
        "stranger": _make_user(session_factory, "stranger@test.com"),
    }


@pytest.fixture
def stripe():
    return FakeStripe()


@pytest.fixture
def hub():
    return BookingEventHub()


@pytest.fixture
def store(session_factory, hub):
    return BookingStore(session_factory=session_factory, hub=hub)


@pytest.fixture
def machine(session_factory, store, stripe):
    return BookingStateMachine(
        store=store,
        ledger=stripe.gateway(),
        users=UserDirectory(session_factory),
        reviews=ReviewRepository(session_factory),
        conversations=SqlConversationBridge(session_factory),
        duplicate_window_seconds=10,
    )


@pytest.fixture
def api_client(session_factory, machine):
    """TestClient wired to the per-test database and booking services."""
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_state_machine] = lambda: machine
    app.dependency_overrides[get_booking_store] = lambda: machine.store
    app.dependency_overrides[get_event_hub] = lambda: machine.store.hub
    app.dependency_overrides[get_user_directory] = lambda: machine.users
    return TestClient(app)


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': user.email})}"}


@pytest.fixture
def headers(users):
    return {name: auth_headers(user) for name, user in users.items()}
