import pytest

from tests.fakes import FakeChainNode, FakeClock


@pytest.fixture
def node():
    return FakeChainNode()


@pytest.fixture
def clock():
    return FakeClock()
