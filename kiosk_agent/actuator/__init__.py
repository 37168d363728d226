"""Browser actuation: strategies and their supervisor."""

from .base import (
    ActuatorError,
    ActuatorStrategy,
    ActuatorUnavailable,
    BrowserSettings,
    find_chromium,
)
from .strategies import PlaywrightStrategy, ProcessStrategy, SyntheticInputStrategy
from .supervisor import ActuatorHandle, ActuatorSupervisor


def build_strategies(names, settings: BrowserSettings) -> list[ActuatorStrategy]:
    """Instantiate strategies in the given preference order."""

    factories = {
        PlaywrightStrategy.name: lambda: PlaywrightStrategy(settings),
        ProcessStrategy.name: lambda: ProcessStrategy(settings),
        SyntheticInputStrategy.name: lambda: SyntheticInputStrategy(),
    }
    strategies: list[ActuatorStrategy] = []
    for name in names:
        factory = factories.get(name)
        if factory is None:
            raise ValueError(f"Unknown actuation strategy: {name}")
        strategies.append(factory())
    return strategies


__all__ = [
    "ActuatorError",
    "ActuatorHandle",
    "ActuatorStrategy",
    "ActuatorSupervisor",
    "ActuatorUnavailable",
    "BrowserSettings",
    "PlaywrightStrategy",
    "ProcessStrategy",
    "SyntheticInputStrategy",
    "build_strategies",
    "find_chromium",
]
