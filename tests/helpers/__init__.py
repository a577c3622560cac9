"""Test helpers for the lifecycle engine test suite"""

from tests.helpers.fake_broker import FakeBroker, FakeTime, iso

__all__ = [
    "FakeBroker",
    "FakeTime",
    "iso",
]
