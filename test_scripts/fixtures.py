"""
Test fixtures and helper utilities for standalone test scripts.
Provides common setup, teardown, fake collaborators and test data helpers.
"""

import sys
import os
import asyncio
import time
from contextlib import asynccontextmanager
from sqlalchemy import text

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from regflow.core.collaborators import (
    ArtifactStore,
    JobSubmitter,
    MailSender,
    ProjectProvisioner,
    QuotaController,
    RepositoryStore,
    ScanTrigger,
    TagLookup,
    UserDirectory,
    UserInfo,
)
from regflow.core.errors import NotFoundError
from regflow.core.event_bus import Dispatcher
from regflow.core.events.registry import Handler, HandlerRegistry
from regflow.core.request_controller import RequestController
from regflow.models.database import Database
from regflow.models.orm import Base


# ============================================================================
# Color codes for terminal output
# ============================================================================

GREEN = '\033[92m'
RED = '\033[91m'
YELLOW = '\033[93m'
BLUE = '\033[94m'
CYAN = '\033[96m'
RESET = '\033[0m'


# ============================================================================
# Test output helpers
# ============================================================================

def print_test_header(test_name):
    """Print formatted test header"""
    print(f"\n{'='*70}")
    print(f"{CYAN}Running: {test_name}{RESET}")
    print(f"{'='*70}\n")


def print_pass(test_name):
    """Print test pass message"""
    print(f"{GREEN}✓ PASS{RESET}: {test_name}")


def print_fail(test_name, error):
    """Print test failure message with error details"""
    print(f"{RED}✗ FAIL{RESET}: {test_name}")
    print(f"{RED}  Error: {error}{RESET}")


def print_info(message):
    """Print informational message"""
    print(f"{BLUE}ℹ {message}{RESET}")


def print_summary(tests_passed, tests_failed):
    """Print test summary"""
    print(f"\n{'='*70}")
    total = tests_passed + tests_failed
    if tests_failed == 0:
        print(f"{GREEN}✓ ALL TESTS PASSED{RESET}: {tests_passed}/{total}")
    else:
        print(f"{RED}✗ SOME TESTS FAILED{RESET}: {tests_passed} passed, {tests_failed} failed")
    print(f"{'='*70}\n")


async def run_tests(title, tests):
    """Run (name, coroutine function) pairs and print a summary. Returns the exit code."""
    print_test_header(title)

    tests_passed = 0
    tests_failed = 0

    for test_name, test_func in tests:
        try:
            await test_func()
            print_pass(test_name)
            tests_passed += 1
        except Exception as e:
            print_fail(test_name, str(e))
            import traceback
            traceback.print_exc()
            tests_failed += 1

    print_summary(tests_passed, tests_failed)
    return 0 if tests_failed == 0 else 1


# ============================================================================
# Database setup/teardown
# ============================================================================

def _remove_database_files(db_path):
    for path in (db_path, f"{db_path}-shm", f"{db_path}-wal"):
        if os.path.exists(path):
            os.remove(path)


async def create_test_database(db_path="./test_regflow.db"):
    """
    Create a fresh test database.
    Deletes existing database and creates new schema.
    """
    from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
    from sqlalchemy import event

    _remove_database_files(db_path)

    # Create a new engine for this specific test database
    db_url = f"sqlite+aiosqlite:///{db_path}"
    test_engine = create_async_engine(
        db_url,
        echo=False,
        future=True,
        connect_args={"timeout": 10.0, "check_same_thread": False}
    )

    # Enable foreign keys for SQLite
    @event.listens_for(test_engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    test_session_factory = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    async with test_engine.begin() as conn:
        await conn.execute(text("PRAGMA journal_mode=WAL"))
        await conn.execute(text("PRAGMA foreign_keys=ON"))
        await conn.execute(text("PRAGMA synchronous=NORMAL"))
        await conn.run_sync(Base.metadata.create_all)

    return Database(db_engine=test_engine, session_factory=test_session_factory)


async def cleanup_database(db: Database):
    """Clean up test database"""
    try:
        await db.close()
    except Exception:
        pass


# ============================================================================
# Fake collaborators
# ============================================================================

class FakeProvisioner(ProjectProvisioner):
    """Records created projects; fails on demand"""

    def __init__(self, should_fail=False, first_project_id=100):
        self.should_fail = should_fail
        self.projects = []
        self._next_id = first_project_id

    async def create_project(self, name, owner_id):
        if self.should_fail:
            raise Exception("project provisioning failed")
        project_id = self._next_id
        self._next_id += 1
        self.projects.append({"project_id": project_id, "name": name, "owner_id": owner_id})
        return project_id


class FakeQuotaController(QuotaController):
    def __init__(self, should_fail=False):
        self.should_fail = should_fail
        self.quotas = []

    async def create_quota(self, reference, reference_id, hard_limits):
        if self.should_fail:
            raise Exception("quota creation failed")
        self.quotas.append({"reference": reference, "reference_id": reference_id, "hard": dict(hard_limits)})
        return len(self.quotas)


class FakeUserDirectory(UserDirectory):
    def __init__(self, users=None):
        self.users = {u.user_id: u for u in (users or [])}

    async def get_by_id(self, user_id):
        if user_id not in self.users:
            raise NotFoundError(f"user {user_id} not found")
        return self.users[user_id]

    async def list_by_ids(self, user_ids):
        return [self.users[i] for i in user_ids if i in self.users]


class FakeTagLookup(TagLookup):
    def __init__(self, tag_ids=None, should_fail=False):
        self.tag_ids = tag_ids or {}
        self.should_fail = should_fail
        self.calls = []

    async def find_tag_id(self, artifact_id, name):
        self.calls.append((artifact_id, name))
        if self.should_fail:
            raise Exception("tag lookup failed")
        return self.tag_ids.get((artifact_id, name))


class FakeArtifactStore(ArtifactStore):
    def __init__(self, should_fail=False):
        self.should_fail = should_fail
        self.calls = []

    async def update_pull_time(self, artifact_id, tag_id, pull_time):
        self.calls.append((artifact_id, tag_id, pull_time))
        if self.should_fail:
            raise Exception("artifact update failed")


class FakeRepositoryStore(RepositoryStore):
    def __init__(self, should_fail=False):
        self.should_fail = should_fail
        self.calls = []

    async def add_pull_count(self, repository_id):
        self.calls.append(repository_id)
        if self.should_fail:
            raise Exception("repository update failed")


class FakeScanTrigger(ScanTrigger):
    def __init__(self):
        self.calls = []

    async def auto_scan(self, artifact, tags):
        self.calls.append((artifact, list(tags)))


class FakeMailSender(MailSender):
    """Mock SMTP sender keeping every message"""

    def __init__(self, should_fail=False):
        self.should_fail = should_fail
        self.messages = []

    async def send(self, address, identity, username, password, timeout, use_ssl, insecure,
                   sender, recipients, subject, body):
        if self.should_fail:
            raise Exception("SMTP error")
        self.messages.append({
            "address": address,
            "sender": sender,
            "recipients": list(recipients),
            "subject": subject,
            "body": body,
        })


class FakeJobSubmitter(JobSubmitter):
    def __init__(self, should_fail=False):
        self.should_fail = should_fail
        self.jobs = []

    async def submit(self, name, parameters, kind="Generic"):
        if self.should_fail:
            raise Exception("job service error")
        self.jobs.append({"name": name, "parameters": dict(parameters), "kind": kind})
        return f"job-{len(self.jobs)}"


def make_user(user_id=1, username="alice", email="alice@example.com"):
    return UserInfo(user_id=user_id, username=username, email=email)


# ============================================================================
# Test handlers
# ============================================================================

class RecordingHandler(Handler):
    """Collects every event it receives"""

    def __init__(self, name="recorder", stateful=False, delay=0.0, should_fail=False):
        self._name = name
        self._stateful = stateful
        self.delay = delay
        self.should_fail = should_fail
        self.events = []
        self.active = 0
        self.max_active = 0

    @property
    def name(self):
        return self._name

    @property
    def is_stateful(self):
        return self._stateful

    async def handle(self, event):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.should_fail:
                raise RuntimeError(f"{self._name} failed")
            self.events.append(event)
        finally:
            self.active -= 1

    def count(self):
        return len(self.events)


# ============================================================================
# Test context managers
# ============================================================================

class TestContext:
    """Context manager for setting up test environment"""

    __test__ = False

    _context_counter = 0

    def __init__(self, db_path=None, handler_timeout=5.0):
        # Generate unique database path for each context
        if db_path is None:
            TestContext._context_counter += 1
            db_path = f"./test_regflow_{TestContext._context_counter}_{int(time.time()*1000)}.db"
        self.db_path = db_path
        self.db = None
        self.registry = HandlerRegistry()
        self.dispatcher = None
        self.handler_timeout = handler_timeout

    async def __aenter__(self):
        """Setup test environment"""
        self.db = await create_test_database(self.db_path)
        self.dispatcher = Dispatcher(self.registry, max_concurrency=16, handler_timeout=self.handler_timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Cleanup test environment"""
        if self.dispatcher:
            await self.dispatcher.stop(timeout=2.0)

        if self.db:
            await cleanup_database(self.db)

        try:
            _remove_database_files(self.db_path)
        except OSError:
            pass

    async def start(self):
        """Freeze the registry and start dispatching"""
        await self.dispatcher.start()

    @asynccontextmanager
    async def get_session(self):
        """Get a new database session as an async context manager"""
        # Use the test database's session factory, not the global one
        session = self.db.session_factory()
        try:
            yield session
        finally:
            await session.close()

    def controller(self, session, provisioner=None, quotas=None, users=None, **kwargs):
        """Request controller wired to this context's dispatcher and fakes"""
        return RequestController(
            session,
            event_bus=self.dispatcher,
            provisioner=provisioner or FakeProvisioner(),
            quotas=quotas or FakeQuotaController(),
            users=users,
            **kwargs,
        )


# ============================================================================
# Assertion helpers
# ============================================================================

def assert_equal(actual, expected, message=""):
    """Assert two values are equal"""
    if actual != expected:
        raise AssertionError(
            f"{message}\nExpected: {expected}\nActual: {actual}"
        )


def assert_true(condition, message=""):
    """Assert condition is true"""
    if not condition:
        raise AssertionError(f"{message}\nExpected: True\nActual: False")


def assert_false(condition, message=""):
    """Assert condition is false"""
    if condition:
        raise AssertionError(f"{message}\nExpected: False\nActual: True")


def assert_in(item, container, message=""):
    """Assert item is in container"""
    if item not in container:
        raise AssertionError(
            f"{message}\nExpected {item} to be in {container}"
        )


def assert_raises(exception_type, func, *args, **kwargs):
    """Assert function raises specific exception"""
    try:
        func(*args, **kwargs)
    except exception_type:
        return
    except Exception as e:
        raise AssertionError(
            f"Expected {exception_type.__name__} to be raised, but got {type(e).__name__}: {e}"
        )
    raise AssertionError(
        f"Expected {exception_type.__name__} to be raised, but no exception was raised"
    )


async def assert_raises_async(exception_type, coro):
    """Assert async function raises specific exception"""
    try:
        await coro
    except exception_type:
        return
    except Exception as e:
        raise AssertionError(
            f"Expected {exception_type.__name__} to be raised, but got {type(e).__name__}: {e}"
        )
    raise AssertionError(
        f"Expected {exception_type.__name__} to be raised, but no exception was raised"
    )
