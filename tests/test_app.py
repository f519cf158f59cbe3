import logging
import os
import subprocess
import sys
from pathlib import Path

from fastapi import FastAPI

import todo_service.observability as observability
from todo_service import main
from todo_service.observability import middleware  # noqa: F401
from todo_service.observability.instruments import ServiceMetrics
from todo_service.observability.logging import configure_logging


def test_module_level_app_is_built_on_import() -> None:
    assert isinstance(main.app, FastAPI)
    assert isinstance(main.app.state.metrics, ServiceMetrics)


def test_create_app_after_observability_submodules_are_loaded() -> None:
    # The package's ``logging`` submodule must not stand in for the stdlib module.
    assert observability.logging.configure_logging is configure_logging
    configure_logging(logging.INFO)

    app = main.create_app()

    paths = set(app.openapi()["paths"])
    assert {"/health", "/metrics", "/monitoring/stats", "/todos", "/todos/{todo_id}"} <= paths


def test_app_module_imports_in_a_fresh_interpreter(tmp_path) -> None:
    result = subprocess.run(
        [sys.executable, "-c", "import todo_service.main as m; print(type(m.app).__name__)"],
        capture_output=True,
        text=True,
        cwd=Path(__file__).resolve().parent.parent,
        env={
            **os.environ,
            "APP_ENV": "test",
            "DATABASE_URL": f"sqlite:///{tmp_path / 'todos.db'}",
        },
        timeout=60,
    )

    assert result.returncode == 0, result.stderr
    assert result.stdout.strip().endswith("FastAPI")
