"""Pytest fixtures for CLI tests.

CLI commands are run both as subprocesses ("python -m datasync.main") and in
process through cli.run() with captured output.
"""

from __future__ import annotations

import argparse
import os
import subprocess
import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

from datasync.main import create_parser

SRC_DIR = Path(__file__).parent.parent.parent / "src"

CliRunner = Callable[..., subprocess.CompletedProcess]


@pytest.fixture
def run_cli(test_config_dir: Path) -> CliRunner:
    """Run "datasync -d <config dir> cli ..." in a subprocess."""

    def run(*args: str, stdin: Optional[str] = None) -> subprocess.CompletedProcess:
        env = os.environ.copy()
        env["PYTHONPATH"] = str(SRC_DIR)
        return subprocess.run(
            [sys.executable, "-m", "datasync.main", "-d", str(test_config_dir), "cli", *args],
            input=stdin,
            capture_output=True,
            text=True,
            env=env,
        )

    return run


@pytest.fixture
def cli_args(test_config_dir: Path) -> Callable[..., argparse.Namespace]:
    """Parse "datasync -d <config dir> cli <args>" without running it."""

    def parse(*args: str) -> argparse.Namespace:
        return create_parser().parse_args(["-d", str(test_config_dir), "cli", *args])

    return parse
