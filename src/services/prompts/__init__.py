"""Prompts module - centralized prompt templates for the planner and renderer.

Re-exports prompt constants and utilities for easy importing:
    from services.prompts import strip_markdown_code_blocks
    from services.prompts import PLANNER_SYSTEM, build_page_prompt
"""

from services.prompts._base import strip_markdown_code_blocks
from services.prompts.planner import PLANNER_OUTLINE, PLANNER_SCHEMA, PLANNER_SYSTEM
from services.prompts.render import build_character_prompt, build_page_prompt

__all__ = [
    # Utilities
    "strip_markdown_code_blocks",
    # Planner prompts
    "PLANNER_SYSTEM",
    "PLANNER_SCHEMA",
    "PLANNER_OUTLINE",
    # Render prompts
    "build_page_prompt",
    "build_character_prompt",
]
