"""ContextAssembler: build the ordered multi-modal segments sent upstream."""

from __future__ import annotations

import logging

from ..types import (
    AssembledContext,
    AttachmentSegment,
    ContextSegment,
    StorageError,
    TextSegment,
    TrackConfig,
    Turn,
)
from .references import find_reference, replace_reference
from .store import AttachmentStore, TurnStore

logger = logging.getLogger(__name__)

TRUNCATION_NOTE = (
    "[Note: Some previous images are not included in context due to limit of {limit} images]"
)


def build_request_text(track: TrackConfig, text: str, has_attachment: bool) -> str:
    """Current-turn text as sent upstream, with the track's prompt prefix."""
    text = text.strip()
    if not text and has_attachment:
        text = track.default_attachment_prompt
    prefix = track.attachment_request_prefix if has_attachment else track.request_prefix
    return f"{prefix}{text}"


class ContextAssembler:
    """Assemble history + attachments for one request.

    Segment order:
    1. the current turn's attachment, if any
    2. historical attachments, oldest first
    3. one text segment: the rendered conversation followed by the new message
    """

    def __init__(self, turn_store: TurnStore, attachment_store: AttachmentStore) -> None:
        self.turn_store = turn_store
        self.attachment_store = attachment_store

    def assemble(
        self,
        identity: str,
        track: TrackConfig,
        text: str,
        current_attachment: AttachmentSegment | None = None,
        exclude: Turn | None = None,
    ) -> AssembledContext:
        """Build the context for ``text`` on ``track``.

        ``exclude`` is the turn just appended for this request; it is dropped
        from the history window since the current message is sent separately.
        """
        window = self.turn_store.tail(identity, track.name, track.history_window)
        history = self._without_current(window, exclude)

        segments: list[ContextSegment] = []
        if current_attachment is not None:
            segments.append(current_attachment)
        attachment_count = len(segments)

        labels = [track.upload_label, track.result_label]
        lines: list[str] = []
        stale: list[str] = []
        truncated = False

        for turn in history:
            content = turn.content
            ref = find_reference(content, labels)
            if ref is not None:
                if attachment_count >= track.max_attachments:
                    truncated = True
                else:
                    loaded = self._load(identity, track.name, ref.attachment_id)
                    if loaded is not None:
                        segments.append(loaded)
                        attachment_count += 1
                    else:
                        stale.append(ref.attachment_id)
                content = replace_reference(content, ref)
            lines.append(f"{turn.speaker}: {content}")

        if truncated:
            logger.info("Reached maximum context images limit (%d)", track.max_attachments)
            lines.append(TRUNCATION_NOTE.format(limit=track.max_attachments))

        if lines:
            narrative = (
                "Previous conversation:\n"
                + "\n".join(lines)
                + f"\n\n{track.new_message_label}{text}"
            )
        else:
            narrative = text
        segments.append(TextSegment(text=narrative))

        return AssembledContext(
            segments=segments,
            attachment_count=attachment_count,
            history_turns=len(history),
            truncated=truncated,
            stale_references=stale,
        )

    @staticmethod
    def _without_current(window: list[Turn], exclude: Turn | None) -> list[Turn]:
        if exclude is None:
            return window
        for i in range(len(window) - 1, -1, -1):
            if window[i] == exclude:
                return window[:i] + window[i + 1:]
        return window

    def _load(self, identity: str, track: str, attachment_id: str) -> AttachmentSegment | None:
        try:
            loaded = self.attachment_store.load(identity, track, attachment_id)
        except (StorageError, OSError) as e:
            logger.error("Failed to load historical attachment %s: %s", attachment_id, e)
            return None
        if loaded is None:
            logger.warning("Historical attachment %s is missing, using placeholder", attachment_id)
            return None
        return AttachmentSegment(
            data=loaded.data,
            mime_type=loaded.mime_type,
            attachment_id=attachment_id,
        )
