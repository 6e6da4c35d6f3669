"""Prompt construction for the inference models."""

from typing import Any

from stripforge.config import NEGATIVE_PROMPTS
from stripforge.jobs.schemas import PANEL_COUNT

SEGMENTATION_TEMPLATE = (
    "Split the following story into exactly {count} comic panels. "
    "Write one short visual scene description per panel, one per line, "
    "numbered 1 to {count}. Describe setting and action only, no dialogue.\n\n"
    "Story:\n{story}"
)

BACKGROUND_TEMPLATE = (
    "Generate a {style} style background for a comic panel showing: {description}. "
    "The scene should be set in a {background} environment."
)


def build_segmentation_prompt(story: str) -> str:
    return SEGMENTATION_TEMPLATE.format(count=PANEL_COUNT, story=story.strip())


def build_background_prompt(description: str, options: dict[str, Any]) -> str:
    return BACKGROUND_TEMPLATE.format(
        style=options.get("style") or "default",
        description=description.strip().rstrip("."),
        background=options.get("background") or "default",
    )


def negative_prompt() -> str:
    return ", ".join(NEGATIVE_PROMPTS)
