"""Shared fixtures for the cloud cost test suite."""

import os
import sys
from pathlib import Path

import pytest

from cloud_cost_mcp.tools.calculator import CostCalculator
from cloud_cost_mcp.tools.pricing_loader import PricingTable
from cloud_cost_shared.data_models import ServerCommand

SRC_DIR = Path(__file__).resolve().parent.parent / "src"
FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"


@pytest.fixture
def table() -> PricingTable:
    return PricingTable.load()


@pytest.fixture
def calculator(table: PricingTable) -> CostCalculator:
    return CostCalculator(table)


def python_server(*args: str) -> ServerCommand:
    """A ServerCommand running this interpreter with src/ importable."""
    pythonpath = os.pathsep.join(p for p in (str(SRC_DIR), os.environ.get("PYTHONPATH", "")) if p)
    return ServerCommand(command=sys.executable, args=list(args), env={"PYTHONPATH": pythonpath})


@pytest.fixture
def bundled_server() -> ServerCommand:
    return python_server("-m", "cloud_cost_mcp")
