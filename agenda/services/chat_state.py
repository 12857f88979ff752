from typing import TypedDict


class DialogueState(TypedDict, total=False):
    """
    State for one inbound turn.
    LangGraph passes this state between nodes, and each node can read/update it.
    """

    # === Conversation identifiers ===
    conversation_id: str
    business_id: str

    # === Conversation context ===
    messages: list[dict]            # history, oldest first, latest inbound included
    current_message: str
    system_prompt: str
    fallback_text: str

    # === Draft ===
    draft_complete: bool
    missing_fields: list[str]

    # === Confirmation detection ===
    is_confirmation: bool
    reply_matches: bool
    summary_present: bool

    # === Control flow ===
    next_action: str                # 'commit' or 'reply'
    response: str | None
    used_fallback: bool

    # === Error handling ===
    error: str | None
