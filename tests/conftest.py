import pytest

from debate_rtc.signaling.transport import InMemorySignalingHub


@pytest.fixture
def hub():
    return InMemorySignalingHub()
