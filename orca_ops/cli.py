"""orca-ops operator CLI."""

from __future__ import annotations

import json
import signal
import time
from pathlib import Path
from typing import Any

import typer

from orca_ops.control_plane.api.app import EngineApp
from orca_ops.control_plane.orchestration.errors import EngineError
from orca_ops.shared.logging_setup import setup_logging
from orca_ops.shared.settings import get_engine_settings

app = typer.Typer(add_completion=False, help="orca-ops: prioritized vault operation engine")


def _build_app(pool_size: int | None = 0) -> EngineApp:
    return EngineApp(get_engine_settings(), pool_size=pool_size)


def _emit(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _fail(exc: EngineError) -> None:
    typer.echo(json.dumps({"error": str(exc), "reason_code": exc.reason_code}), err=True)
    raise typer.Exit(code=1) from exc


def _load_payload(payload: str, payload_file: Path | None) -> dict[str, Any]:
    if payload and payload_file is not None:
        raise typer.BadParameter("Use only one of --payload or --payload-file")
    raw = payload_file.read_text() if payload_file is not None else (payload or "{}")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"Payload is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise typer.BadParameter("Payload must be a JSON object")
    return parsed


@app.command()
def add_target(
    name: str,
    base_url: str = typer.Option(..., "--base-url"),
    username: str = typer.Option("", "--username"),
    credential_env: str = typer.Option("ORCA_VAULT_PASSWORD", "--credential-env"),
    max_sessions: int = typer.Option(None, "--max-sessions"),
    concurrent_sessions: bool = typer.Option(
        None, "--concurrent-sessions/--single-session"
    ),
    skip_tls_verify: bool = typer.Option(False, "--skip-tls-verify"),
    actor: str = typer.Option("", "--as"),
) -> None:
    """Register a vault target and its concurrent-session budget."""
    spec: dict[str, Any] = {
        "name": name,
        "base_url": base_url,
        "username": username,
        "credential_env": credential_env,
        "skip_tls_verify": skip_tls_verify,
    }
    if max_sessions is not None:
        spec["max_concurrent_sessions"] = max_sessions
    if concurrent_sessions is not None:
        spec["concurrent_sessions"] = concurrent_sessions
    engine = _build_app()
    try:
        _emit(engine.register_target(spec, actor=actor))
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()


@app.command()
def update_target(
    target: str,
    max_sessions: int = typer.Option(None, "--max-sessions"),
    unlimited: bool = typer.Option(False, "--unlimited"),
    active: bool = typer.Option(None, "--activate/--deactivate"),
    actor: str = typer.Option("", "--as"),
) -> None:
    """Change a target's limit or activation; running work is not interrupted."""
    changes: dict[str, Any] = {}
    if unlimited:
        changes["unlimited"] = True
    elif max_sessions is not None:
        changes["max_concurrent_sessions"] = max_sessions
    if active is not None:
        changes["is_active"] = active
    engine = _build_app()
    try:
        _emit(engine.update_target(target, changes, actor=actor))
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()


@app.command()
def list_targets() -> None:
    """List registered targets with their current in-flight counts."""
    engine = _build_app()
    try:
        _emit(engine.list_targets())
    finally:
        engine.close()


@app.command()
def test_target(target: str) -> None:
    """Log on to a target and immediately log off."""
    engine = _build_app()
    try:
        result = engine.test_target(target)
        _emit(result)
        if not result.get("success"):
            raise typer.Exit(code=1)
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()


@app.command()
def submit(
    operation_type: str,
    target: str = typer.Option(..., "--target"),
    priority: str = typer.Option("normal", "--priority"),
    payload: str = typer.Option("", "--payload"),
    payload_file: Path = typer.Option(None, "--payload-file"),
    max_attempts: int = typer.Option(None, "--max-attempts"),
    correlation_id: str = typer.Option("", "--correlation-id"),
    token: str = typer.Option("", "--token", envvar="ORCA_OPERATOR_TOKEN"),
    actor: str = typer.Option("", "--as"),
) -> None:
    """Submit an operation; prints its identifier and initial status."""
    request: dict[str, Any] = {
        "type": operation_type,
        "target_id": target,
        "priority": priority,
        "payload": _load_payload(payload, payload_file),
    }
    if max_attempts is not None:
        request["max_attempts"] = max_attempts
    if correlation_id:
        request["correlation_id"] = correlation_id
    engine = _build_app()
    try:
        _emit(engine.submit_operation(request, token=token or None, created_by=actor))
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()


@app.command()
def show(operation_id: str, history: bool = typer.Option(False, "--history")) -> None:
    """Show an operation, optionally with its transition log and audit events."""
    engine = _build_app()
    try:
        if history:
            _emit(engine.operation_history(operation_id))
        else:
            _emit(engine.get_operation(operation_id))
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()


@app.command()
def list_ops(
    status: str = typer.Option("", "--status"),
    operation_type: str = typer.Option("", "--type"),
    priority: str = typer.Option("", "--priority"),
    target: str = typer.Option("", "--target"),
    limit: int = typer.Option(100, "--limit"),
) -> None:
    """List operations, newest first."""
    engine = _build_app()
    try:
        _emit(
            engine.list_operations(
                status=status or None,
                operation_type=operation_type or None,
                priority=priority or None,
                target=target or None,
                limit=limit,
            )
        )
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()


@app.command()
def cancel(
    operation_id: str,
    token: str = typer.Option("", "--token", envvar="ORCA_OPERATOR_TOKEN"),
    actor: str = typer.Option("", "--as"),
) -> None:
    """Cancel a queued operation, or flag a running one for cancellation."""
    engine = _build_app()
    try:
        _emit(engine.cancel_operation(operation_id, token=token or None, actor=actor))
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()


@app.command()
def dispatch(operation_id: str = typer.Option("", "--operation-id")) -> None:
    """Run one scheduling pass inline, or dispatch a single operation."""
    engine = _build_app()
    try:
        if operation_id:
            engine.dispatch_operation(operation_id)
            _emit(engine.get_operation(operation_id))
        else:
            _emit(engine.dispatch_once())
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()


@app.command()
def recover() -> None:
    """Re-evaluate operations left running by a previous process."""
    engine = _build_app()
    try:
        _emit(engine.recover())
    finally:
        engine.close()


@app.command()
def metrics() -> None:
    """Print queue depth, per-target load and outcome counts."""
    engine = _build_app()
    try:
        _emit(engine.pipeline_metrics())
    finally:
        engine.close()


@app.command()
def issue_token(operator: str) -> None:
    """Issue an operator session token used to attribute submissions."""
    engine = _build_app()
    try:
        _emit(engine.issue_operator_token(operator))
    except EngineError as exc:
        _fail(exc)
    finally:
        engine.close()


@app.command()
def serve(duration: float = typer.Option(0.0, "--duration", help="Seconds to run; 0 runs until interrupted")) -> None:
    """Recover, then dispatch continuously on the worker pool."""
    settings = get_engine_settings()
    setup_logging(settings.log_level)
    engine = EngineApp(settings)
    stopping = {"flag": False}

    def _request_stop(signum: int, frame: Any) -> None:
        stopping["flag"] = True

    signal.signal(signal.SIGTERM, _request_stop)
    engine.recover()
    engine.start()
    started = time.monotonic()
    try:
        while not stopping["flag"]:
            if duration and time.monotonic() - started >= duration:
                break
            engine.sessions.cleanup_expired()
            time.sleep(0.2)
    except KeyboardInterrupt:
        pass
    finally:
        engine.close()


if __name__ == "__main__":
    app()
