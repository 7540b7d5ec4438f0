#!/usr/bin/env python3
"""
JSON Utilities - Fast JSON serialization wrapper using orjson
Handles datetimes, enums and dataclasses natively so documents and
decision records can be written without manual conversion.
"""

import logging
from typing import Any

import orjson

logger = logging.getLogger(__name__)


def dumps(obj: Any, indent: bool = False) -> str:
    """
    Serialize object to JSON string

    Args:
        obj: Object to serialize
        indent: Pretty print with two-space indentation

    Returns:
        JSON string
    """
    opts = orjson.OPT_NON_STR_KEYS
    if indent:
        opts |= orjson.OPT_INDENT_2
    return orjson.dumps(obj, option=opts).decode('utf-8')


def loads(s) -> Any:
    """
    Deserialize JSON string (or bytes) to object

    Raises:
        orjson.JSONDecodeError (a ValueError subclass) on malformed input
    """
    return orjson.loads(s)


JSONDecodeError = orjson.JSONDecodeError
