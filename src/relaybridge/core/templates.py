"""System prompt loading.

The prompt appended to every invocation lives in
``relaybridge/prompts/safety-prompt.txt``; a deployment can point
``BRIDGE_SYSTEM_PROMPT_FILE`` at its own file instead.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Optional

logger = logging.getLogger("relaybridge.templates")

_THIS_DIR = os.path.dirname(os.path.abspath(__file__))
_PROMPTS_DIR = os.path.normpath(os.path.join(_THIS_DIR, "..", "prompts"))
DEFAULT_PROMPT_PATH = os.path.join(_PROMPTS_DIR, "safety-prompt.txt")


@lru_cache(maxsize=8)
def _read_prompt(path: str) -> str:
    if not os.path.isfile(path):
        raise FileNotFoundError(f"System prompt not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read().strip()


def system_prompt(path: Optional[str] = None) -> str:
    """Return the system prompt text from *path* or the bundled default."""
    effective = path or DEFAULT_PROMPT_PATH
    text = _read_prompt(effective)
    logger.debug("Loaded system prompt from %s (%d chars)", effective, len(text))
    return text
