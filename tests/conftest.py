"""Pytest configuration for site-anywhere."""
import pytest


@pytest.fixture
def site_root(tmp_path):
    root = tmp_path / "www"
    root.mkdir()
    return root


@pytest.fixture
def ca_dir(tmp_path):
    return tmp_path / "ca"
