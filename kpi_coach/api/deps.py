"""Shared route dependencies"""
from fastapi import Request

from kpi_coach.services.errors import AuthRequiredError
from kpi_coach.services.scope import Actor


def current_actor(request: Request) -> Actor:
    """The user AuthMiddleware attached to the request, as an Actor."""
    user = getattr(request.state, "user", None)
    if user is None:
        raise AuthRequiredError()
    return Actor.from_user(user)
