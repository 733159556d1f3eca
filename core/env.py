# -*- coding: utf-8 -*-
"""
Unified Environment Variable Loader.

This module loads environment variables from a .env file and exposes them through
small accessors. It includes a fallback mechanism for aliased variables.

Example:
    import core.env
    print(core.env.gemini_api_key())
"""
import os
from dotenv import load_dotenv

# Load environment variables from .env file located in the project root
# The search path starts from the current working directory and goes up.
load_dotenv()

def _first(*keys: str, default: str | None = None) -> str | None:
    """
    Return the value of the first environment variable that is set and not empty.

    Args:
        *keys: A sequence of environment variable names to check.
        default: The default value to return if no variable is found.

    Returns:
        The value of the first found environment variable, or the default value.
    """
    for key in keys:
        val = os.getenv(key)
        if val:
            return val
    return default

def gemini_api_key() -> str | None:
    """Key used for Gemini when the settings record leaves it blank.

    Read on every call so a key exported after import is still picked up.
    """
    return _first('GEMINI_API_KEY', 'API_KEY')
