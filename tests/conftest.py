from __future__ import annotations

from pathlib import Path

import pytest

from custody.config import Settings
from custody.service import CustodyService

from .fakes import FakeEngine, FakeResolverService


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        bot_token="123:abc",
        bot_secret="server-secret",
        staging_dir=tmp_path / "staging",
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def resolver_service() -> FakeResolverService:
    return FakeResolverService({"@bob": 202, "+15551234567": 303})


@pytest.fixture
def service(settings: Settings, engine: FakeEngine, resolver_service: FakeResolverService) -> CustodyService:
    return CustodyService(settings, engine, resolver_service=resolver_service)
