"""Shared fixtures."""

from unittest.mock import AsyncMock

import pytest

from tests.fakes import ConnectionRecorder, FakeAuthProvider


@pytest.fixture
def auth_provider():
    return FakeAuthProvider()


@pytest.fixture
def connections():
    return ConnectionRecorder()


@pytest.fixture
def version_fetcher():
    return AsyncMock(return_value=((2, 3000, 1), True))


@pytest.fixture
def sleep():
    return AsyncMock()
