"""Prompt assembly for feature runs."""

from __future__ import annotations

from typing import Sequence

from .features import Feature
from .profiles import AgentProfile
from .providers.types import TextBlock


def build_feature_prompt(profile: AgentProfile, feature: Feature) -> str:
    guidelines = "\n".join(f"- {item}" for item in profile.guidelines)
    constraints = "\n".join(f"- {item}" for item in profile.constraints)

    header = f"Implement feature {feature.id}"
    if feature.title:
        header += f": {feature.title}"
    sections = [
        header,
        "Description:\n" + (feature.description.strip() or "(no description provided)"),
    ]
    if feature.image_paths:
        sections.append(_attachments(feature.image_paths))
    if guidelines:
        sections.append("Guidelines:\n" + guidelines)
    if constraints:
        sections.append("Constraints:\n" + constraints)

    return "\n\n".join(sections)


def build_continuation_prompt(message: str, image_paths: Sequence[str] | None = None) -> list[TextBlock]:
    """Prompt for resuming an interrupted session with new user input."""

    blocks = [TextBlock(text=message.strip())]
    if image_paths:
        blocks.append(TextBlock(text=_attachments(image_paths)))
    return blocks


def _attachments(image_paths: Sequence[str]) -> str:
    lines = "\n".join(f"- {path}" for path in image_paths)
    return "Attached images (read them from disk):\n" + lines


def commit_message(feature: Feature | None, feature_id: str) -> str:
    title = ""
    if feature is not None:
        title = feature.title.strip() or next(iter(feature.description.strip().splitlines()), "")
    subject = f"feat: {title[:72]}" if title else f"feat: implement feature {feature_id}"
    return f"{subject}\n\nFeature-Id: {feature_id}"


__all__ = ["build_continuation_prompt", "build_feature_prompt", "commit_message"]
