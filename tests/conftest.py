"""
Pytest Configuration and Fixtures.
Shared test fixtures for all test modules.
"""

import pytest

from fakes import FakeExtractor, Harness, RecordingSleep, build_harness
from medenroll.core.config import EnrollmentSettings
from medenroll.core.enums import ActorRole
from medenroll.services.security.authorization import Actor


@pytest.fixture
def settings() -> EnrollmentSettings:
    """Test settings: no .env file, in-memory storage, three notification attempts."""
    return EnrollmentSettings(
        _env_file=None,
        ENVIRONMENT="testing",
        NOTIFICATION_MAX_ATTEMPTS=3,
    )


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def harness(settings, extractor, sleeper) -> Harness:
    return build_harness(settings, extractor, sleeper)


@pytest.fixture
def enrollee() -> Actor:
    return Actor(id="member-1", roles=frozenset({ActorRole.ENROLLEE}))


@pytest.fixture
def other_enrollee() -> Actor:
    return Actor(id="member-2", roles=frozenset({ActorRole.ENROLLEE}))


@pytest.fixture
def interviewer() -> Actor:
    return Actor(id="dr-house", roles=frozenset({ActorRole.INTERVIEWER}))


@pytest.fixture
def admin() -> Actor:
    return Actor(id="admin-1", roles=frozenset({ActorRole.ADMIN}))


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "api: mark test as an API test")
