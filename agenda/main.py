from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agenda.core.logging_context import configure_logging
from agenda.api.v1.webhooks.router import router as webhooks_router
from agenda.api.v1.notifications.router import router as notifications_router
from agenda.services.commit_pipeline import CommitGuard
from agenda.services.messaging_gateway import EvolutionGateway
from agenda.services.notifications import NotificationBroadcaster
from agenda.services.payment_gateway import payment_gateway_for

configure_logging()

app = FastAPI(
    title="Agenda WhatsApp Booking",
    description="LangGraph-powered WhatsApp booking assistant with payment-gated confirmation",
    version="1.0.0"
)

# Process-wide collaborators, injected into routes through agenda.api.deps
app.state.broadcaster = NotificationBroadcaster()
app.state.commit_guard = CommitGuard()
app.state.messaging = EvolutionGateway()
app.state.payment_gateway_factory = payment_gateway_for

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhooks_router, prefix="/api/v1", tags=["Webhooks"])
app.include_router(notifications_router, prefix="/api/v1", tags=["Notifications"])


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
