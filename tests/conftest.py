"""
Shared fixtures: isolated logger/environment and throwaway git repositories.
"""

import shutil
import subprocess
import sys
import tempfile
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from aidp.logger import AidpLogger, setup_logger, shutdown_logger

LOGGING_ENV_VARS = ["AIDP_LOG_LEVEL", "AIDP_LOG_FILE", "AIDP_DEBUG", "DEBUG"]


def git(cwd, *args):
    """Run a git command synchronously and return stdout."""
    result = subprocess.run(['git', *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def init_repo(path: Path) -> Path:
    """Initialize a repository on ``main`` with one commit."""
    git(path, 'init')
    git(path, 'config', 'user.name', 'Test User')
    git(path, 'config', 'user.email', 'test@example.com')
    git(path, 'config', 'commit.gpgsign', 'false')
    (path / 'README.md').write_text('# Test Project\n')
    git(path, 'add', '.')
    git(path, 'commit', '-m', 'Initial commit')
    git(path, 'branch', '-M', 'main')
    return path


@pytest.fixture(autouse=True)
def isolated_logging(monkeypatch, tmp_path_factory):
    """Keep log output and logging env vars out of the working tree."""
    for name in LOGGING_ENV_VARS:
        monkeypatch.delenv(name, raising=False)

    log_root = tmp_path_factory.mktemp("aidp_logs")
    setup_logger(str(log_root))
    yield
    shutdown_logger()


@pytest.fixture
def no_git_discovery(monkeypatch, tmp_path):
    """Stop git from discovering a repository above tmp_path."""
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))
    return tmp_path


@pytest.fixture
def temp_git_repo():
    """Create a temporary project directory with a git repo."""
    temp_dir = tempfile.mkdtemp(prefix='aidp_test_')
    project_path = init_repo(Path(temp_dir).resolve())

    yield project_path

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def test_logger(tmp_path):
    """Logger writing text lines to tmp_path/.aidp/logs/aidp.log."""
    logger = AidpLogger(str(tmp_path), {'level': 'debug'})
    yield logger
    logger.close()


def read_log(logger: AidpLogger) -> str:
    return Path(logger.log_file).read_text(encoding='utf-8')
