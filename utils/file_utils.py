"""
Async file operations for recipe-autopilot.

Recipe documents are JSON files under RECIPES_DIR. Writes go through a
sibling temporary file that replaces the target only once it is complete,
so an interrupted or failed save never leaves a truncated recipe behind.
"""

import os
import json
import logging
from typing import Any, Dict, List, Union

import aiofiles
import aiofiles.os

from utils.retry_utils import with_file_operation_retry

logger = logging.getLogger(__name__)

JsonDocument = Union[Dict[str, Any], List[Any]]


@with_file_operation_retry(max_attempts=3)
async def read_json(filepath: str, encoding: str = 'utf-8') -> JsonDocument:
    """Load a JSON document. FileNotFoundError propagates without retry."""
    logger.debug(f"Loading {filepath}")
    async with aiofiles.open(filepath, mode='r', encoding=encoding) as handle:
        return json.loads(await handle.read())


@with_file_operation_retry(max_attempts=3)
async def write_json(filepath: str, data: JsonDocument, encoding: str = 'utf-8', indent: int = 2) -> int:
    """
    Persist a JSON document, creating parent directories as needed.

    The document is serialized before anything touches the disk: data that
    cannot be serialized raises TypeError and leaves the existing file as is.

    Returns:
        Number of characters written
    """
    payload = json.dumps(data, indent=indent, ensure_ascii=False)

    directory = os.path.dirname(filepath)
    if directory:
        await aiofiles.os.makedirs(directory, exist_ok=True)

    staging = f"{filepath}.tmp"
    async with aiofiles.open(staging, mode='w', encoding=encoding) as handle:
        written = await handle.write(payload)
    await aiofiles.os.replace(staging, filepath)

    logger.debug(f"Saved {written} chars to {filepath}")
    return written


async def file_exists(filepath: str) -> bool:
    return await aiofiles.os.path.isfile(filepath)
