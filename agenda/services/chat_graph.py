from langgraph.graph import StateGraph, END

from agenda.services.chat_state import DialogueState
from agenda.services.chat_nodes import (
    detect_confirmation_node,
    route_after_detect,
    confirm_booking_node,
    generate_reply_node,
)


def create_dialogue_graph():
    """
    Create and compile the LangGraph workflow for one inbound turn.
    """

    workflow = StateGraph(DialogueState)

    workflow.add_node("detect_confirmation_node", detect_confirmation_node)
    workflow.add_node("confirm_booking_node", confirm_booking_node)
    workflow.add_node("generate_reply_node", generate_reply_node)

    workflow.set_entry_point("detect_confirmation_node")

    workflow.add_conditional_edges(
        "detect_confirmation_node",
        route_after_detect,
        {
            "confirm_booking_node": "confirm_booking_node",
            "generate_reply_node": "generate_reply_node",
        }
    )

    workflow.add_edge("confirm_booking_node", END)
    workflow.add_edge("generate_reply_node", END)

    return workflow.compile()


dialogue_graph = create_dialogue_graph()
