"""Helpers shared by the prompt modules for handling model replies."""

import re

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def strip_markdown_code_blocks(text: str) -> str:
    """Return the body of the first markdown code block in a model reply.

    Models asked for JSON often wrap it in a ```json fence, sometimes with
    prose before or after. Text without a closed fence is returned stripped,
    minus a dangling opening fence.

    Args:
        text: Raw model reply

    Returns:
        The fenced body, or the reply itself when there is no fence
    """
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
    return text.strip()
