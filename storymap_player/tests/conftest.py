"""Shared pytest fixtures for the storymap player test suite."""

from __future__ import annotations

import pytest

from storymap_player.config import PlayerSettings
from storymap_player.tests.fakes import FakeClock, FakeRenderGateway


@pytest.fixture()
def settings() -> PlayerSettings:
    return PlayerSettings(_env_file=None)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def gateway(clock: FakeClock) -> FakeRenderGateway:
    return FakeRenderGateway(clock)
