"""Shared pytest fixtures for beebridge tests."""

import shutil
import sys
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from beebridge.core.config import BridgeConfig
from beebridge.core.models import GenerationRequest

FAKE_WORKER = Path(__file__).parent / "fixtures" / "fake_worker.py"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


def make_config(temp_dir: Path, mode: str = "success", **overrides) -> BridgeConfig:
    """Build a config that launches the fake worker in *mode*."""
    values = dict(
        worker_executable=sys.executable,
        worker_script=FAKE_WORKER,
        worker_args=[mode],
        terminate_grace_period=1.0,
        poll_interval=0.02,
        settings_file=temp_dir / "data" / "settings.json",
        outputs_dir=temp_dir / "outputs",
        _env_file=None,
    )
    values.update(overrides)
    return BridgeConfig(**values)


@pytest.fixture
def test_config(temp_dir: Path) -> BridgeConfig:
    """Create a test configuration that runs the fake worker in success mode.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        BridgeConfig instance for testing
    """
    return make_config(temp_dir)


@pytest.fixture
def worker_config(temp_dir: Path):
    """Factory fixture: ``worker_config("hang")`` returns a config for that mode."""

    def factory(mode: str = "success", **overrides) -> BridgeConfig:
        return make_config(temp_dir, mode, **overrides)

    return factory


@pytest.fixture
def valid_request() -> GenerationRequest:
    """Create a valid generation request for testing.

    Returns:
        GenerationRequest with the minimum step count for fast runs
    """
    return GenerationRequest(
        prompt="A lighthouse at dusk",
        img_width=512,
        img_height=512,
        num_imgs=1,
        num_inference_steps=10,
        guidance_scale=7.5,
    )
