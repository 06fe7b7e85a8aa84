"""Version information for purgeman."""

from __future__ import annotations

import platform
import sys
from importlib.metadata import PackageNotFoundError, version
from typing import Any

import orjson

PACKAGE_NAME = "purgeman"


def get_version() -> str:
    try:
        return version(PACKAGE_NAME)
    except PackageNotFoundError:
        # running from a source checkout
        return "0.0.0+unknown"


def get_version_info() -> dict[str, Any]:
    """Return the package version and the runtime it runs on."""
    return {
        "version": get_version(),
        "python": sys.version.split()[0],
        "platform": f"{platform.system().lower()}/{platform.machine()}",
    }


def get_version_json() -> str:
    """Render version info as indented JSON."""
    return orjson.dumps(get_version_info(), option=orjson.OPT_INDENT_2).decode("utf-8")
