"""Shared fixtures for shapefield tests."""

from __future__ import annotations

import pytest

from shapefield import context as context_module
from shapefield.config import RuntimeConfig, set_config
from shapefield.kernel import Kernel


@pytest.fixture(autouse=True)
def _isolated_runtime():
    """Every test starts with strict contexts, default budgets and no active context."""
    previous = set_config(RuntimeConfig(strict_contexts=True))
    yield
    set_config(previous)
    context_module._state.active = None


@pytest.fixture
def kernel() -> Kernel:
    return Kernel()


@pytest.fixture
def union_scene_yaml() -> str:
    return """\
version: "0.1"
render:
  resolution: 0.1
  bounds_size: 4.0
shapes:
  - id: body
    op: union
    children:
      - id: ball
        op: sphere
        params:
          radius: 1.0
      - id: block
        op: box
"""


@pytest.fixture
def two_root_scene_yaml() -> str:
    return """\
version: "0.1"
render:
  resolution: 0.2
  bounds_size: 2.5
shapes:
  - id: left
    op: sphere
    transform:
      translation: [-3.0, 0.0, 0.0]
  - id: right
    op: shell
    render:
      splitting_angle: 45.0
    transform:
      translation: [3.0, 0.0, 0.0]
    children:
      - id: right_core
        op: cylinder
"""
