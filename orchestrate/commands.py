"""
Chat commands — per-message request options typed into the message box.

Syntax:
    /websearch <query>   → answer with web search enabled, sources appended

The command word is stripped before the message reaches the provider, but
the stored and displayed message keeps it so the transcript shows how the
answer was produced. Matching is case-insensitive.

Examples:
    "/websearch latest python release"
    "/WebSearch who won the match yesterday?"
"""

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SEARCH_COMMAND = "/websearch"

SEARCH_PATTERN = re.compile(r"^/websearch(?:\s+(.*))?$", re.IGNORECASE | re.DOTALL)


@dataclass
class ChatCommand:
    """Parsed chat command result."""
    search: bool = False   # True if /websearch was used
    message: str = ""      # Text sent to the provider (command stripped)
    display: str = ""      # Text shown in the transcript and stored


def parse_chat_command(text: str) -> ChatCommand:
    """
    Parse a user message for a leading chat command.

    Raises ValueError for an empty message or a command with no query.
    """
    text = (text or "").strip()
    if not text:
        raise ValueError("Message is empty")

    match = SEARCH_PATTERN.match(text)
    if not match:
        return ChatCommand(message=text, display=text)

    query = (match.group(1) or "").strip()
    if not query:
        raise ValueError(f"{SEARCH_COMMAND} needs a query")

    logger.debug("Web search requested: %r", query[:80])
    return ChatCommand(search=True, message=query, display=f"{SEARCH_COMMAND} {query}")


def strip_command(text: str) -> str:
    """Provider-facing text for a stored message; unparseable text passes through."""
    try:
        return parse_chat_command(text).message
    except ValueError:
        return text
