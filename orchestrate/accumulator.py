"""
Accumulation engine — folds stream events into the streaming message.

Content only ever grows while streaming. The model id follows whatever
the server declares on each event, since providers may quietly route to
a fallback model.
"""

from __future__ import annotations

import logging

from orchestrate.citations import merge_citations, render_citations
from orchestrate.controller import StreamSession
from orchestrate.errors import TransportError
from orchestrate.models import Message, StreamEvent

logger = logging.getLogger(__name__)

STOPPED_SUFFIX = "\n\n_Generation stopped._"
STOPPED_ONLY = "Generation stopped."
ERROR_SUFFIX = "\n\n_Error: Message streaming was interrupted._"
ERROR_ONLY = "Sorry, there was an error processing your request."


def sealed_content(content: str, aborted: bool) -> str:
    """Content for a stream that ended early: keep what we have and add a notice."""
    if content:
        return content + (STOPPED_SUFFIX if aborted else ERROR_SUFFIX)
    return STOPPED_ONLY if aborted else ERROR_ONLY


class AccumulationEngine:
    """Applies events from one StreamSession to its target message."""

    def __init__(self, message: Message, session: StreamSession):
        self.message = message
        self.session = session

    def apply(self, event: StreamEvent) -> bool:
        """
        Fold one event in. Returns True when content grew, i.e. when a
        checkpoint might be due.

        An event carrying a server error raises TransportError.
        """
        if not self.message.is_streaming:
            raise RuntimeError("target message is not streaming")
        if event.error:
            raise TransportError(f"Provider error mid-stream: {event.error}")

        if event.model:
            self.message.model = event.model

        if event.citations:
            self.session.accumulated_citations = merge_citations(
                self.session.accumulated_citations, event.citations,
            )
            self.message.citations = list(self.session.accumulated_citations)

        if not event.content:
            return False
        self.session.accumulated_content += event.content
        self.message.content = self.session.accumulated_content
        return True

    def finalize(self) -> str:
        """
        Seal a completed stream. A search answer with sources gets the
        rendered citations block appended before the final checkpoint.
        """
        content = self.session.accumulated_content
        if self.session.search_enabled and self.session.accumulated_citations:
            content += render_citations(self.session.accumulated_citations)
            self.session.accumulated_content = content
        self.message.content = content
        self.message.is_streaming = False
        return content

    def seal(self, aborted: bool) -> str:
        """Seal an aborted or failed stream with the matching notice."""
        content = sealed_content(self.session.accumulated_content, aborted)
        self.message.content = content
        self.message.is_streaming = False
        logger.debug(
            "Sealed message at %d as %s (%d chars kept)",
            self.session.target_index,
            "stopped" if aborted else "error",
            len(self.session.accumulated_content),
        )
        return content
