"""Shared fixtures for all tests."""

import os
import threading

import pytest

from pipeaudit.orchestrator import scan_repository
from pipeaudit.providers.local import LocalRepository


REPOS_DIR = os.path.join(os.path.dirname(__file__), "fixtures", "repos")


@pytest.fixture
def repos_dir():
    """Directory holding one subdirectory per fixture repository."""
    return REPOS_DIR


@pytest.fixture
def insecure_repo_path():
    return os.path.join(REPOS_DIR, "insecure")


@pytest.fixture
def secure_repo_path():
    return os.path.join(REPOS_DIR, "secure")


@pytest.fixture
def gitlab_repo_path():
    return os.path.join(REPOS_DIR, "gitlab")


@pytest.fixture
def insecure_result(insecure_repo_path):
    """Scan result of the insecure GitHub Actions fixture repository."""
    return scan_repository(LocalRepository(insecure_repo_path))


@pytest.fixture
def gitlab_result(gitlab_repo_path):
    """Scan result of the GitLab CI fixture repository."""
    return scan_repository(LocalRepository(gitlab_repo_path))


@pytest.fixture
def cancel():
    return threading.Event()
