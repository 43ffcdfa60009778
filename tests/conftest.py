"""
Pytest configuration and fixtures.
"""

import io

import pytest

from bookingflow.reporter import Reporter


@pytest.fixture
def reporter(tmp_path):
    return Reporter(tmp_path / "shots", stream=io.StringIO())
