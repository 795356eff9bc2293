import pytest

from constraint_memory.clock import ManualClock
from constraint_memory.storage import InMemoryStateStore

from tests.fixtures import EPOCH, TableSimilarity, make_engine


@pytest.fixture
def clock():
    return ManualClock(EPOCH)


@pytest.fixture
def store(clock):
    return InMemoryStateStore(clock=clock)


@pytest.fixture
def similarity():
    return TableSimilarity()


@pytest.fixture
def engine(clock, store, similarity):
    return make_engine(clock=clock, store=store, similarity=similarity)
