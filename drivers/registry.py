"""
Driver registry.

Each driver module calls ``register()`` at import time.  ``main.py`` then
auto-discovers all driver modules via ``pkgutil.iter_modules`` so no central
list needs to be maintained.
"""

from __future__ import annotations

from services.message import Platform

_REGISTRY: dict[Platform, tuple[type, type]] = {}


def register(platform: Platform, config_cls: type, driver_cls: type) -> None:
    """Register a driver for *platform*.

    Args:
        platform:   Platform key, also the config file section (e.g. ``"telegram"``).
        config_cls: Pydantic model class for config validation.
        driver_cls: ``BaseDriver`` subclass to instantiate.
    """
    _REGISTRY[Platform(platform)] = (config_cls, driver_cls)


def all_drivers() -> dict[Platform, tuple[type, type]]:
    """Return a snapshot of ``{platform: (config_cls, driver_cls)}`` for every
    registered driver."""
    return dict(_REGISTRY)
