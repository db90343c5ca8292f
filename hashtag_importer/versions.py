from __future__ import annotations

import sys
from importlib.metadata import PackageNotFoundError, version

DIST_NAME = "hashtag-importer"


def pkg_version(name: str) -> str:
    try:
        return version(name)
    except PackageNotFoundError:
        return "unknown"


def user_agent() -> str:
    return f"hashtag-importer v{pkg_version(DIST_NAME)}"


def runtime_versions() -> dict[str, str]:
    return {
        "python": sys.version.split()[0],
        "hashtag-importer": pkg_version(DIST_NAME),
        "apify-client": pkg_version("apify-client"),
        "requests": pkg_version("requests"),
        "pydantic": pkg_version("pydantic"),
    }
