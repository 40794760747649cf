"""Attachment reference tokens embedded in turn content, e.g. ``[IMAGE ATTACHED:1001]``."""

from __future__ import annotations

import re
from dataclasses import dataclass

PLACEHOLDERS: dict[str, str] = {
    "IMAGE ATTACHED": "[Image]",
    "UPLOADED IMAGE": "(Uploaded an image)",
    "GENERATED IMAGE": "(Generated an image)",
}
DEFAULT_PLACEHOLDER = "[Attachment]"


@dataclass
class Reference:
    label: str
    attachment_id: str
    token: str  # exact text matched in the content


def format_reference(label: str, attachment_id: str) -> str:
    return f"[{label}:{attachment_id}]"


def placeholder_for(label: str) -> str:
    return PLACEHOLDERS.get(label, DEFAULT_PLACEHOLDER)


def _pattern(labels: list[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(label) for label in labels)
    return re.compile(rf"\[({alternatives}):([0-9]+)\]")


def find_reference(content: str, labels: list[str]) -> Reference | None:
    """First reference token in ``content`` whose label is one of ``labels``."""
    labels = [label for label in labels if label]
    if not labels:
        return None
    match = _pattern(labels).search(content)
    if not match:
        return None
    return Reference(label=match.group(1), attachment_id=match.group(2), token=match.group(0))


def replace_reference(content: str, ref: Reference) -> str:
    """Swap the token for its neutral placeholder, keeping the rest of the text."""
    before, _, after = content.partition(ref.token)
    parts = [before.strip(), placeholder_for(ref.label), after.strip()]
    return " ".join(p for p in parts if p)


def with_reference(label: str, attachment_id: str, text: str) -> str:
    """Content for a turn that carries an attachment: token first, then text."""
    token = format_reference(label, attachment_id)
    return f"{token} {text}".strip() if text else token
