"""Request-scoped dependencies shared by the route modules."""

from __future__ import annotations

import logging

from fastapi import Request

from chronicles.manager import ConfigurationError, ProviderManager, settings_from_request
from chronicles.ratelimit import AuxiliaryLimiters

logger = logging.getLogger(__name__)


def build_manager(request: Request) -> ProviderManager:
    """Resolve provider settings from headers/env and build a manager.

    The manager is per request, so its cached adapter is never shared
    between concurrent requests. Raises ConfigurationError.
    """
    settings = settings_from_request(request.headers)
    manager = ProviderManager(lambda: settings)
    manager.ensure_provider()
    return manager


def get_manager(request: Request) -> ProviderManager:
    return build_manager(request)


def get_optional_manager(request: Request) -> ProviderManager | None:
    """Like get_manager, but None instead of a configuration error."""
    try:
        return build_manager(request)
    except ConfigurationError as e:
        logger.info("no provider for auxiliary request: %s", e)
        return None


def get_limiters(request: Request) -> AuxiliaryLimiters:
    return request.app.state.limiters
