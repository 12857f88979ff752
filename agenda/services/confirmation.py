"""
Confirmation detection.

A contact's "sim" only counts as a confirmation event when the assistant's
most recent message presented a complete booking summary and asked for the
confirmation. Everything else is a normal dialogue turn.
"""

import logging
import re
from dataclasses import dataclass

from agenda.models.enums import MessageRole

logger = logging.getLogger(__name__)

# Words that on their own mean "yes"
CONFIRMATION_CORE_TOKENS = frozenset({
    "sim", "ok", "okay", "confirmo", "confirmado", "confirma", "yes",
})

# Words allowed around a core token in a short compound ("sim, pode confirmar")
CONFIRMATION_FILLER_TOKENS = frozenset({
    "pode", "confirmar", "isso", "certo", "perfeito", "claro", "tudo", "correto",
    "por", "favor", "obrigado", "obrigada", "s",
})

MAX_CONFIRMATION_WORDS = 4

# Field labels of the recap the assistant is instructed to present
SUMMARY_LABELS = (
    re.compile(r"\bnome\s*:", re.IGNORECASE),
    re.compile(r"\bservi[çc]o\s*:", re.IGNORECASE),
    re.compile(r"\bprofissional\s*:", re.IGNORECASE),
    re.compile(r"\bdata\s*:", re.IGNORECASE),
    re.compile(r"\bhor[áa]rio\s*:", re.IGNORECASE),
)

SUMMARY_CUES = (
    re.compile(r"responda\s+\*?sim\*?", re.IGNORECASE),
    re.compile(r"est[áa]\s+tudo\s+correto", re.IGNORECASE),
    re.compile(r"\bconfirmar\b.*\?", re.IGNORECASE),
    re.compile(r"\bconfirma\?", re.IGNORECASE),
)

# Phrases with which the assistant itself declares the booking done
FINAL_CONFIRMATION_CUES = (
    re.compile(r"agendamento\s+(?:foi\s+)?(?:confirmado|realizado)", re.IGNORECASE),
    re.compile(r"agendado\s+com\s+sucesso", re.IGNORECASE),
    re.compile(r"est[áa]\s+confirmado", re.IGNORECASE),
    re.compile(r"\bfoi\s+agendado\b", re.IGNORECASE),
)


@dataclass(frozen=True)
class ConfirmationCheck:
    is_confirmation: bool
    reply_matches: bool
    summary_present: bool


def normalize_reply(text: str) -> str:
    return " ".join((text or "").strip().lower().split())


def is_confirmation_reply(text: str) -> bool:
    """True for "sim", "ok", "confirmo" and short compounds like "sim, pode confirmar"."""
    tokens = re.findall(r"\w+", normalize_reply(text))
    if not tokens or len(tokens) > MAX_CONFIRMATION_WORDS:
        return False
    if not any(token in CONFIRMATION_CORE_TOKENS for token in tokens):
        return False
    allowed = CONFIRMATION_CORE_TOKENS | CONFIRMATION_FILLER_TOKENS
    return all(token in allowed for token in tokens)


def is_summary_message(text: str) -> bool:
    """A field-by-field recap plus an explicit request to confirm."""
    if not text:
        return False
    if not all(label.search(text) for label in SUMMARY_LABELS):
        return False
    return any(cue.search(text) for cue in SUMMARY_CUES)


def is_final_confirmation(text: str) -> bool:
    if not text:
        return False
    return any(cue.search(text) for cue in FINAL_CONFIRMATION_CUES)


def _role(message) -> str:
    return message["role"] if isinstance(message, dict) else message.role


def _content(message) -> str:
    return message["content"] if isinstance(message, dict) else message.content


def last_outbound_before_last_inbound(messages: list) -> str | None:
    """Content of the newest assistant message preceding the newest inbound one."""
    seen_inbound = False
    for message in reversed(messages):
        role = _role(message)
        if not seen_inbound:
            if role == MessageRole.INBOUND.value:
                seen_inbound = True
            continue
        if role == MessageRole.OUTBOUND.value:
            return _content(message)
    return None


def detect_confirmation(messages: list) -> ConfirmationCheck:
    """
    Classify the latest inbound message of ``messages`` (oldest first).

    Both the reply and the corroborating summary must hold for the turn to be
    a confirmation event.
    """
    latest_inbound = None
    for message in reversed(messages):
        if _role(message) == MessageRole.INBOUND.value:
            latest_inbound = _content(message)
            break

    if latest_inbound is None:
        return ConfirmationCheck(False, False, False)

    reply_matches = is_confirmation_reply(latest_inbound)
    previous_outbound = last_outbound_before_last_inbound(messages)
    summary_present = is_summary_message(previous_outbound or "")

    if reply_matches and not summary_present:
        logger.info("Confirmation-like reply without a preceding summary, treating as dialogue turn")

    return ConfirmationCheck(
        is_confirmation=reply_matches and summary_present,
        reply_matches=reply_matches,
        summary_present=summary_present,
    )
