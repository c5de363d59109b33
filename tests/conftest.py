"""
Pytest configuration and shared fixtures.

Test settings are put in the environment before any guestcomms import so
the cached Settings and the engine pick them up. The database is a SQLite
file so threaded claim tests share it.
"""

import os
import tempfile
import uuid
from datetime import timedelta

import pytest

_DB_PATH = os.path.join(tempfile.gettempdir(), f"guestcomms-test-{uuid.uuid4().hex}.db")

os.environ["DATABASE_URL"] = f"sqlite:///{_DB_PATH}"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["WEBHOOK_SECRET"] = "test-secret"
os.environ["RUN_CLAIM_LOOP"] = "false"

# Clear settings cache before any app imports to ensure test env vars are used
from guestcomms.config import get_settings
get_settings.cache_clear()

from guestcomms import storage  # noqa: E402
from guestcomms.providers import Tenant, Template, substitute_variables  # noqa: E402
from guestcomms.storage import Base, SessionLocal, engine  # noqa: E402
from guestcomms.utils import utcnow  # noqa: E402


# =============================================================================
# Collaborator fakes
# =============================================================================

class FakeTenantProvider:
    def __init__(self, *tenants):
        self.tenants = {tenant.id: tenant for tenant in tenants}

    def get_tenant_by_id(self, tenant_id):
        try:
            return self.tenants[tenant_id]
        except KeyError:
            raise LookupError(f"Tenant {tenant_id} not found")

    def find_tenant_by_account_id(self, account_id):
        for tenant in self.tenants.values():
            if tenant.account_id == account_id:
                return tenant
        return None


class FakeTemplateProvider:
    def __init__(self, templates=None):
        self.templates = dict(templates or {})
        self.ensured = []

    def get_template_for_message(self, tenant_id, message_type):
        body = self.templates.get(message_type)
        return Template(message_type=message_type, template_body=body, tenant_id=tenant_id) if body else None

    def substitute_variables(self, body, variables):
        return substitute_variables(body, variables)

    def ensure_default_templates(self, tenant_id):
        self.ensured.append(tenant_id)


class FakePms:
    def __init__(self):
        self.reservations = {}
        self.listings = {}
        self.threads = {}
        self.thread_messages = {}
        self.conversation_sends = []
        self.reservation_sends = []
        self.listing_fetches = 0
        self.fail_sends = None
        self.fail_listing = False

    def get_reservation(self, tenant, reservation_id):
        return dict(self.reservations.get(str(reservation_id), {"id": reservation_id}))

    def get_listing(self, tenant, listing_id):
        self.listing_fetches += 1
        if self.fail_listing:
            raise RuntimeError("listing API unavailable")
        listing = self.listings.get(str(listing_id))
        return dict(listing) if listing else None

    def get_reservation_conversations(self, tenant, reservation_id):
        return list(self.threads.get(str(reservation_id), []))

    def get_conversation_messages(self, tenant, thread_id):
        return list(self.thread_messages.get(str(thread_id), []))

    def send_conversation_message(self, tenant, thread_id, body, channel_kind):
        if self.fail_sends:
            raise RuntimeError(self.fail_sends)
        self.conversation_sends.append((tenant.id, thread_id, body, channel_kind))

    def send_message_to_guest(self, tenant, reservation_id, body):
        if self.fail_sends:
            raise RuntimeError(self.fail_sends)
        self.reservation_sends.append((tenant.id, reservation_id, body))

    @property
    def sends(self):
        return self.conversation_sends + self.reservation_sends


class FakeDirectMessenger:
    def __init__(self):
        self.sent = []

    def send_direct_message(self, tenant, phone_number, body):
        self.sent.append((tenant.id, phone_number, body))


class FakeReplyGenerator:
    def __init__(self, reply="Thanks for your message! Check-in is from 3pm."):
        self.reply = reply
        self.calls = []

    def generate_reply(self, tenant, conversation_id, guest_message, context):
        self.calls.append((tenant.id, conversation_id, guest_message, dict(context)))
        return self.reply


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def tables():
    """Fresh schema for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(tables):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant():
    return Tenant(id="tenant-1", name="Seaside Stays", account_id="1001")


@pytest.fixture
def other_tenant():
    return Tenant(id="tenant-2", name="City Flats", account_id="2002")


@pytest.fixture
def tenants(tenant, other_tenant):
    return FakeTenantProvider(tenant, other_tenant)


@pytest.fixture
def pms():
    return FakePms()


@pytest.fixture
def templates():
    return FakeTemplateProvider()


@pytest.fixture
def messenger():
    return FakeDirectMessenger()


@pytest.fixture
def replies():
    return FakeReplyGenerator()


@pytest.fixture
def pipeline(tables, tenants, pms, templates, messenger, replies):
    from guestcomms.main import build_pipeline

    return build_pipeline(
        tenants,
        pms,
        templates,
        direct_messenger=messenger,
        reply_generator=replies,
        session_factory=SessionLocal,
    )


@pytest.fixture
def make_conversation(db, tenant):
    def _make(booking_id="R1", tenant_id=None, thread_id=None):
        return storage.get_or_create_conversation(db, tenant_id or tenant.id, booking_id, thread_id)
    return _make


@pytest.fixture
def enqueue(db):
    """Queue a proactive job due ``offset`` from now (negative = already due)."""
    def _enqueue(conversation, message_type="pre_arrival_24h", offset=timedelta(minutes=-5), reservation_id=None):
        send_at = utcnow() + offset
        message_id, _ = storage.create_pending_outbound_message(
            db,
            conversation,
            message_type=message_type,
            message_label=message_type,
            reservation_id=reservation_id or conversation.booking_id,
            guest_name="Ada",
            scheduled_send_at=send_at,
            scheduled_local=send_at,
            timezone_name="UTC",
        )
        return message_id
    return _enqueue


def pytest_sessionfinish(session, exitstatus):
    engine.dispose()
    if os.path.exists(_DB_PATH):
        os.remove(_DB_PATH)
