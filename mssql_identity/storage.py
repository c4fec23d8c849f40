# -*- coding: utf-8 -*-

# MSSQL Identity
# Copyright (C) 2026 MSSQL Identity contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Storage location of the persisted identity state.

Layout:
    <app data>/vscode-mssql/AAD/aad.db        token cache metadata
    <app data>/vscode-mssql/AAD/accounts.db   account store

App data is the roaming profile on Windows, Application Support on macOS
and the XDG config home on Linux and other Unix systems.
"""

import os
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from mssql_identity.config import AAD_DIRECTORY_NAME, PRODUCT_NAME
from mssql_identity.exceptions import PlatformUnsupportedError


# Unix flavours that follow the XDG base directory layout
_XDG_PLATFORM_PREFIXES = ("linux", "freebsd", "openbsd", "netbsd", "sunos", "aix")


def get_app_data_path(platform: Optional[str] = None) -> Path:
    """
    Returns the platform app-data directory.

    Args:
        platform: sys.platform style identifier (default: current platform)

    Returns:
        Base directory for per-user application state

    Raises:
        PlatformUnsupportedError: If the platform is not recognized
    """
    platform = platform or sys.platform

    if platform == "win32":
        app_data = os.environ.get("APPDATA")
        if app_data:
            return Path(app_data)
        return Path(os.environ.get("USERPROFILE", str(Path.home()))) / "AppData" / "Roaming"

    if platform == "darwin":
        return Path.home() / "Library" / "Application Support"

    if platform.startswith(_XDG_PLATFORM_PREFIXES):
        xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
        if xdg_config_home:
            return Path(xdg_config_home)
        return Path.home() / ".config"

    raise PlatformUnsupportedError(platform)


def get_default_storage_location(platform: Optional[str] = None) -> Path:
    """Returns the product directory under app data."""
    return get_app_data_path(platform) / PRODUCT_NAME


def find_or_make_storage_path(platform: Optional[str] = None) -> Optional[Path]:
    """
    Resolves and creates the token-store root (<product>/AAD).

    Safe to call repeatedly: existing directories are not an error.

    Args:
        platform: sys.platform style identifier (default: current platform)

    Returns:
        Storage root, or None if it could not be created

    Raises:
        PlatformUnsupportedError: If the platform is not recognized
    """
    base_location = get_default_storage_location(platform)
    storage_path = base_location / AAD_DIRECTORY_NAME

    try:
        base_location.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Creating the base directory failed: {base_location} ({e})")
        return None

    try:
        storage_path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Initialization of identity storage failed: {storage_path} ({e})")
        logger.error("Azure accounts will not be available")
        return None

    logger.debug(f"Initialized identity storage: {storage_path}")
    return storage_path
