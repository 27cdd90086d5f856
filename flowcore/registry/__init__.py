"""Explicit registry of components and triggers."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Union

from pydantic import ValidationError

from ..components.base import Component, Trigger
from ..errors import UnknownComponentError
from .models import CapabilityDescriptor

logger = logging.getLogger(__name__)


class ComponentRegistry:
    """Name-keyed lookup of components and triggers.

    Built once at process start and passed to the executor and dispatcher.
    Names are unique per kind.
    """

    def __init__(self, entries: Iterable[Union[Component, Trigger]] = ()) -> None:
        self._components: Dict[str, Component] = {}
        self._triggers: Dict[str, Trigger] = {}
        for entry in entries:
            self.register(entry)

    def register(self, entry: Union[Component, Trigger]) -> None:
        if isinstance(entry, Component):
            target, kind = self._components, "component"
        elif isinstance(entry, Trigger):
            target, kind = self._triggers, "trigger"
        else:
            raise TypeError(f"Cannot register {type(entry).__name__}: not a Component or Trigger")
        if entry.name in target:
            raise ValueError(f"A {kind} named '{entry.name}' is already registered")
        target[entry.name] = entry
        logger.debug(f"Registered {kind} {entry.name}")

    def component(self, name: str) -> Component:
        try:
            return self._components[name]
        except KeyError:
            raise UnknownComponentError(name, "component") from None

    def trigger(self, name: str) -> Trigger:
        try:
            return self._triggers[name]
        except KeyError:
            raise UnknownComponentError(name, "trigger") from None

    def __contains__(self, name: str) -> bool:
        return name in self._components or name in self._triggers

    def describe(self) -> List[CapabilityDescriptor]:
        """Descriptors for every registered entry, components first."""
        descriptors: List[CapabilityDescriptor] = []
        entries = [("component", c) for c in self._components.values()] + [
            ("trigger", t) for t in self._triggers.values()
        ]
        for kind, entry in entries:
            model = entry.configuration_model
            try:
                channels = entry.output_channels(model())
            except ValidationError:
                # required settings: channels depend on configuration
                channels = []
            descriptors.append(
                CapabilityDescriptor(
                    name=entry.name,
                    kind=kind,
                    label=entry.label,
                    description=entry.description,
                    configuration_schema=model.model_json_schema(),
                    output_channels=channels,
                )
            )
        return descriptors


__all__ = ["CapabilityDescriptor", "ComponentRegistry"]
