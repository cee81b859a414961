"""Shared fixtures for the load generator tests."""

from __future__ import annotations

import logging
import random

import pytest

from kwok_load_generator.synthetic import SyntheticContent

from tests.fakes import FakeObjectStore, FixedRandom, FrozenClock


@pytest.fixture(autouse=True)
def _debug_logs(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="kwok_load_generator")


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def content(rng: random.Random) -> SyntheticContent:
    return SyntheticContent(rng)


@pytest.fixture
def calm_content() -> SyntheticContent:
    """Content whose probability draws never trigger churn."""

    return SyntheticContent(FixedRandom(0.99))
