"""Per-resource diff: current state versus declared attributes."""

from __future__ import annotations

from converge_engine.constants import ENSURE_ATTRIBUTE
from converge_engine.domain.models import (
    Action,
    ActionKind,
    AttributeChange,
    CurrentState,
    Resource,
)
from converge_engine.providers.base import ProviderProtocol


def compute_action(
    resource: Resource,
    current: CurrentState,
    provider: ProviderProtocol,
) -> Action:
    """Decide the single action that moves ``resource`` to its desired state.

    Only declared attributes are compared. A resource already in its desired
    state always yields ``noop``.
    """

    if resource.wants_absent:
        if current.exists:
            change = AttributeChange(
                attribute=ENSURE_ATTRIBUTE,
                current=current.attributes.get(ENSURE_ATTRIBUTE, "present"),
                desired=resource.ensure,
            )
            return Action(resource, ActionKind.DELETE, current, (change,))
        return Action(resource, ActionKind.NOOP, current)

    if not current.exists:
        changes = tuple(
            AttributeChange(attribute=name, current=None, desired=desired)
            for name, desired in resource.attributes.items()
        )
        return Action(resource, ActionKind.CREATE, current, changes)

    changes = tuple(
        AttributeChange(attribute=name, current=current.attributes.get(name), desired=desired)
        for name, desired in resource.attributes.items()
        if not provider.is_in_sync(name, current.attributes.get(name), desired)
    )
    if changes:
        return Action(resource, ActionKind.UPDATE, current, changes)
    return Action(resource, ActionKind.NOOP, current)


__all__ = ["compute_action"]
