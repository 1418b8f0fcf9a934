import sys
from pathlib import Path

import pytest


BACKEND_PATH = Path(__file__).resolve().parents[1] / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.append(str(BACKEND_PATH))

from app.approvals.domain.models import Actor  # noqa: E402


@pytest.fixture
def manager():
    return Actor(id="mgr-1", name="Manager", role="manager")


@pytest.fixture
def second_manager():
    return Actor(id="mgr-2", name="Other Manager", role="manager")


@pytest.fixture
def project_manager():
    return Actor(id="pm-1", name="Project Manager", role="project_manager")


@pytest.fixture
def employee():
    return Actor(id="emp-1", name="Employee", role="employee")


@pytest.fixture
def procurement():
    return Actor(id="proc-1", name="Procurement", role="procurement")
