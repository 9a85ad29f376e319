"""Shared fixtures: an isolated workspace and a config pointing at it."""

from pathlib import Path

import pytest

from crabclaw.config import AppConfig, LLMConfig


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def tape_dir(tmp_path: Path) -> Path:
    return tmp_path / "tapes"


@pytest.fixture
def app_config(workspace: Path, tape_dir: Path) -> AppConfig:
    return AppConfig(
        workspace=workspace,
        llm=LLMConfig(model="openai:test-model", api_key="test-key"),
        tape_dir=tape_dir,
    )
