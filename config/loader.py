# config/loader.py
"""
Configuration reload utilities for ChapterForge.

``reload_settings()``:
1. Reloads environment variables from ``.env`` (via ``dotenv.load_dotenv``).
2. Re-creates the settings instance so that changed values are applied.
3. Updates the constants exported by the ``config`` package.
"""

from __future__ import annotations

import importlib

import structlog
from dotenv import load_dotenv

logger = structlog.get_logger(__name__)


def reload_settings() -> bool:
    """Reload configuration from the environment and refresh the ``config`` package.

    Returns ``True`` on success, ``False`` on failure.
    """
    try:
        load_dotenv(override=True)

        import config as config_pkg
        import config.settings as settings_mod

        importlib.reload(settings_mod)
        config_pkg.settings = settings_mod.settings

        for field_name in type(settings_mod.settings).model_fields:
            setattr(config_pkg, field_name, getattr(settings_mod.settings, field_name))

        logger.info("reload_settings: configuration reloaded")
        return True
    except Exception as exc:
        logger.error("reload_settings: failed to reload configuration", error=str(exc), exc_info=True)
        return False
