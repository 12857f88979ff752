from fastapi import Request

from agenda.services.commit_pipeline import CommitGuard
from agenda.services.notifications import NotificationBroadcaster


def get_broadcaster(request: Request) -> NotificationBroadcaster:
    return request.app.state.broadcaster


def get_commit_guard(request: Request) -> CommitGuard:
    return request.app.state.commit_guard


def get_messaging(request: Request):
    return request.app.state.messaging


def get_payment_gateway_factory(request: Request):
    return request.app.state.payment_gateway_factory
