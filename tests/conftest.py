import pytest
from factories import FakeClock, FakeProbe

from kbtrack.config import TrackerConfig
from kbtrack.tracker import Tracker


@pytest.fixture
def config():
    return TrackerConfig()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def tracker(tmp_path, config, probe, clock):
    return Tracker(tmp_path / "kbtrack", config=config, probe=probe, clock=clock)
