"""
Deploy backend factory.

The backend is a deployment-time choice (``settings.deploy_backend``); nothing above this
package branches on which one is active except through ``DeploymentBackend.family``.
"""
import logging
from typing import Callable, Dict

from app.modules.deployments.backends.base import (
    PLATFORM,
    SANDBOX,
    DeploymentBackend,
    ResourceInfo,
    RuntimeInstance,
    ServiceInfo,
)

logger = logging.getLogger(__name__)

_BACKEND_REGISTRY: Dict[str, Callable[[], DeploymentBackend]] = {}


def _register_defaults() -> None:
    def _sprites() -> DeploymentBackend:
        from app.modules.deployments.backends.sprites import SpritesBackend

        return SpritesBackend()

    def _fly() -> DeploymentBackend:
        from app.modules.deployments.backends.fly import FlyBackend

        return FlyBackend()

    _BACKEND_REGISTRY["sprites"] = _sprites
    _BACKEND_REGISTRY["fly"] = _fly


_register_defaults()


def register_backend(name: str, factory: Callable[[], DeploymentBackend]) -> None:
    """Register a custom backend (plugins, test doubles)."""
    _BACKEND_REGISTRY[name.lower()] = factory


def get_backend(name: str = None) -> DeploymentBackend:
    from app.config import settings

    backend_name = (name or settings.deploy_backend).lower()
    factory = _BACKEND_REGISTRY.get(backend_name)
    if factory is None:
        available = ", ".join(sorted(_BACKEND_REGISTRY))
        raise ValueError(f"Unknown deploy backend: {backend_name!r}. Available backends: {available}")
    logger.info(f"Using deploy backend {backend_name}")
    return factory()


__all__ = [
    "PLATFORM",
    "SANDBOX",
    "DeploymentBackend",
    "ResourceInfo",
    "RuntimeInstance",
    "ServiceInfo",
    "get_backend",
    "register_backend",
]
