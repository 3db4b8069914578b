"""
Step registry.

Steps register metadata here so CLI options can be validated before any
database connection is opened.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Mapping, Sequence, Tuple, Type

from legacy_bridge.migrator.pipeline.engine import EntityStep
from legacy_bridge.migrator.steps import ORDERED_STEPS


@dataclass(frozen=True)
class StepDescriptor:
    """Metadata describing one migration step."""

    name: str
    position: int
    step_class: Type[EntityStep]
    source_table: str
    destination_table: str

    def build(self) -> EntityStep:
        return self.step_class()


def get_step_registry() -> Mapping[str, StepDescriptor]:
    """Return every step keyed by name, in execution order."""
    return OrderedDict(
        (
            step_class.name,
            StepDescriptor(
                name=step_class.name,
                position=position,
                step_class=step_class,
                source_table=step_class.mapping.source_table,
                destination_table=step_class.mapping.destination_table,
            ),
        )
        for position, step_class in enumerate(ORDERED_STEPS)
    )


def _lookup(name: str, registry: Mapping[str, StepDescriptor]) -> StepDescriptor | None:
    wanted = name.strip().lower()
    return next((descriptor for key, descriptor in registry.items() if key.lower() == wanted), None)


def resolve_steps(
    selected: Sequence[str] = (),
    *,
    from_step: str | None = None,
    registry: Mapping[str, StepDescriptor] | None = None,
) -> Tuple[StepDescriptor, ...]:
    """
    Map requested step names (case-insensitive) to descriptors, raising on unknowns.

    With no selection every step is returned; ``from_step`` drops the steps
    before it. The result is always in execution order.
    """
    registry = registry or get_step_registry()
    requested = [name for name in selected if name and name.strip()]
    unknown = sorted({name for name in [*requested, *([from_step] if from_step else [])] if _lookup(name, registry) is None})
    if unknown:
        raise ValueError(
            "Unknown migration steps: " + ", ".join(unknown) + ". Available: " + ", ".join(registry.keys())
        )
    descriptors = list(registry.values())
    if requested:
        names = {_lookup(name, registry).name for name in requested}
        descriptors = [descriptor for descriptor in descriptors if descriptor.name in names]
    if from_step:
        start = _lookup(from_step, registry).position
        descriptors = [descriptor for descriptor in descriptors if descriptor.position >= start]
    return tuple(descriptors)


def next_step_after(name: str | None, registry: Mapping[str, StepDescriptor] | None = None) -> str | None:
    """Name of the step following ``name``; the first step when ``name`` is None."""
    registry = registry or get_step_registry()
    descriptors = list(registry.values())
    if name is None:
        return descriptors[0].name if descriptors else None
    current = _lookup(name, registry)
    if current is None:
        return descriptors[0].name if descriptors else None
    following = [descriptor for descriptor in descriptors if descriptor.position == current.position + 1]
    return following[0].name if following else None
