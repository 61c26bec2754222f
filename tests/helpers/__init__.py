"""Test helpers for the sniper test suite"""

from tests.helpers.execution_stubs import (
    START_TIME,
    FakeClock,
    StubPriceClient,
    StubVenue,
    make_opportunity,
    make_pair,
    make_policy,
    make_position,
    run,
)

__all__ = [
    "START_TIME",
    "FakeClock",
    "StubPriceClient",
    "StubVenue",
    "make_opportunity",
    "make_pair",
    "make_policy",
    "make_position",
    "run",
]
