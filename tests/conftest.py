from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from orca_ops.control_plane.api.app import EngineApp
from orca_ops.execution_plane.vault.client_inmemory import InMemoryVaultClient
from orca_ops.shared.settings import EngineSettings


def build_settings(tmp_path: Path, **overrides: str) -> EngineSettings:
    env = {
        "ORCA_DATA_DIR": str(tmp_path / "data"),
        "ORCA_BACKOFF_JITTER": "false",
    }
    env.update(overrides)
    return EngineSettings.from_env(env)


@pytest.fixture
def vault() -> InMemoryVaultClient:
    return InMemoryVaultClient(
        base_url="https://vault-a.example.test",
        users=[
            {
                "id": 7,
                "username": "alice",
                "source": "LDAP",
                "userType": "EPVUser",
                "enableUser": True,
                "suspended": False,
                "groupsMembership": [{"groupId": 1, "groupName": "Auditors", "groupType": "Vault"}],
            }
        ],
    )


@pytest.fixture
def engine(tmp_path: Path, vault: InMemoryVaultClient) -> Any:
    app = EngineApp(
        build_settings(tmp_path, ORCA_BACKOFF_BASE_SECONDS="0"),
        db_path=tmp_path / "engine.sqlite",
        client_factory=lambda target: vault,
        pool_size=0,
    )
    yield app
    app.close()


@pytest.fixture
def target(engine: EngineApp) -> dict[str, Any]:
    return engine.register_target(
        {
            "name": "vault-a",
            "base_url": "https://vault-a.example.test",
            "username": "svc-orca",
            "max_concurrent_sessions": 1,
        }
    )


@pytest.fixture
def make_settings(tmp_path: Path) -> Any:
    def _make(**overrides: str) -> EngineSettings:
        return build_settings(tmp_path, **overrides)

    return _make
