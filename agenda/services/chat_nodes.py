import logging

from agenda.core.exceptions import ExternalServiceUnavailable
from agenda.services.chat_state import DialogueState
from agenda.services.confirmation import detect_confirmation
from agenda.services.llm import complete_chat

logger = logging.getLogger(__name__)


# ============== NODE 1: Confirmation detection ==============

async def detect_confirmation_node(state: DialogueState) -> DialogueState:
    """
    Classify the latest inbound message.
    Runs first for every inbound message; never calls the language model.
    """
    check = detect_confirmation(state.get("messages", []))

    # A corroborated "sim" only commits a draft that has every slot
    commit = check.is_confirmation and state.get("draft_complete", False)
    if check.is_confirmation and not commit:
        logger.info("Confirmation received but draft still missing %s", state.get("missing_fields"))

    return {
        **state,
        "is_confirmation": check.is_confirmation,
        "reply_matches": check.reply_matches,
        "summary_present": check.summary_present,
        "next_action": "commit" if commit else "reply",
    }


def route_after_detect(state: DialogueState) -> str:
    if state.get("next_action") == "commit":
        return "confirm_booking_node"
    return "generate_reply_node"


# ============== NODE 2a: Confirmation -> commit pipeline ==============

async def confirm_booking_node(state: DialogueState) -> DialogueState:
    """No assistant reply here; the commit pipeline sends its own messages."""
    return {**state, "response": None, "used_fallback": False}


# ============== NODE 2b: Language model turn ==============

async def generate_reply_node(state: DialogueState) -> DialogueState:
    try:
        response = await complete_chat(
            state["system_prompt"],
            state.get("messages", []),
            state.get("current_message"),
        )
        return {**state, "response": response, "used_fallback": False, "error": None}
    except ExternalServiceUnavailable as exc:
        logger.warning("Language model unavailable, sending fallback: %s", exc)
        return {
            **state,
            "response": state.get("fallback_text"),
            "used_fallback": True,
            "error": str(exc),
        }
