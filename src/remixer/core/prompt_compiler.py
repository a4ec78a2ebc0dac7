"""Flatten a composed prompt document into provider prompt text.

The builder stores prompts as a structured JSON document (one entry per
component category such as character, wardrobe or pose).  The queue never
interprets that document; only a provider that needs plain text calls
:func:`compile_prompt` right before generation.

Output Structure::

    [Category]: [value]

    [Category]: [value]

    Edit Instructions:

    [Remix edit instructions]

Each section is separated by double newlines.  Empty values are silently
omitted (no blank sections in the output).

Usage
-----
::

    text = compile_prompt(
        {"character": "a goblin tinkerer", "pose": {"stance": "crouching"}},
        edit_instructions="make it night time",
    )
"""

from __future__ import annotations

from typing import Any

_EDIT_HEADER = "Edit Instructions:"


def _label(key: str) -> str:
    return key.replace("_", " ").strip().capitalize()


def _render(value: Any) -> str:
    """Render a prompt value as a single line of text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return "yes" if value else ""
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, dict):
        parts = []
        for key, inner in value.items():
            rendered = _render(inner)
            if rendered:
                parts.append(f"{_label(key).lower()} {rendered}")
        return ", ".join(parts)
    if isinstance(value, (list, tuple)):
        return ", ".join(text for text in (_render(v) for v in value) if text)
    return str(value).strip()


def compile_prompt(prompt_json: dict[str, Any], edit_instructions: str | None = None) -> str:
    """Compile the prompt document into one text prompt.

    Args:
        prompt_json: Composed prompt document.  Top-level keys become
            labelled sections in their original order.
        edit_instructions: Optional remix instructions, appended as a final
            section.

    Returns:
        The compiled prompt with sections separated by double newlines
        (``\\n\\n``).
    """
    sections: list[str] = []

    for key, value in prompt_json.items():
        rendered = _render(value)
        if rendered:
            sections.append(f"{_label(key)}: {rendered}")

    if edit_instructions and edit_instructions.strip():
        sections.append(_EDIT_HEADER)
        sections.append(edit_instructions.strip())

    return "\n\n".join(sections)
