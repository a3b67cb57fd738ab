from __future__ import annotations

import ast
from pathlib import Path


def _imported_names(path: Path) -> list[str]:
    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    names: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            names.extend(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom):
            names.append(node.module or "")
    return names


def test_control_plane_does_not_import_http_stack() -> None:
    forbidden = ("requests", "urllib3")
    for root in ("orca_ops/control_plane", "orca_ops/shared"):
        for path in Path(root).rglob("*.py"):
            for name in _imported_names(path):
                lowered = name.lower()
                assert not any(lowered.split(".")[0] == token for token in forbidden), (
                    f"{path} imports forbidden dependency: {name}"
                )


def test_storage_and_contracts_do_not_reach_into_execution_plane() -> None:
    roots = ("orca_ops/control_plane/db", "orca_ops/control_plane/models", "orca_ops/shared")
    for root in roots:
        for path in Path(root).rglob("*.py"):
            for name in _imported_names(path):
                assert not name.startswith("orca_ops.execution_plane"), (
                    f"{path} imports execution plane module: {name}"
                )
