import pytest

from tests.fakes import (
    FakeContactRepository,
    FakeDocumentRepository,
    FakeInstanceRepository,
    FakeMessageRepository,
    FakeMessagingClient,
    FakeNotifier,
    FakeQueue,
    FakeRedis,
)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def instances():
    return FakeInstanceRepository()


@pytest.fixture
def contacts():
    return FakeContactRepository()


@pytest.fixture
def messages():
    return FakeMessageRepository()


@pytest.fixture
def documents():
    return FakeDocumentRepository()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def fake_queue():
    return FakeQueue()


@pytest.fixture
def messaging_client():
    return FakeMessagingClient()
