# app/core/version.py
"""Service version from installed package metadata, a VERSION file, or git."""
import subprocess
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path


DISTRIBUTION_NAME = "x402-agent-gateway"
VERSION_FILE = Path(__file__).parent.parent.parent / "VERSION"


@lru_cache()
def get_version() -> str:
    """Resolve the version string reported by the service.

    Priority:
    1. VERSION file (for Docker/production images)
    2. Installed distribution metadata
    3. Git commit count and short hash, e.g. 0.71.840eba4
    4. Fallback to 0.0.0-unknown
    """
    if VERSION_FILE.exists():
        file_version = VERSION_FILE.read_text().strip()
        if file_version:
            return file_version

    try:
        return package_version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        pass

    try:
        commit_count = subprocess.run(
            ["git", "rev-list", "--count", "HEAD"],
            capture_output=True,
            text=True,
            check=True
        ).stdout.strip()

        short_hash = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            capture_output=True,
            text=True,
            check=True
        ).stdout.strip()

        return f"0.{commit_count}.{short_hash}"
    except (subprocess.CalledProcessError, FileNotFoundError):
        return "0.0.0-unknown"


VERSION = get_version()
