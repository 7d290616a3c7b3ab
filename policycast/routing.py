"""
Delivery router: turns a classified event into delivery tasks.

The routing table is an immutable value handed in at construction; the
router itself holds no other state and never talks to adapters.
"""

from __future__ import annotations

from dataclasses import dataclass

from .config.schema import RoutingTable
from .errors import ConfigError
from .models import ClassifiedEvent
from .render import render_event
from .tasks import DeliveryTask


@dataclass(frozen=True)
class RoutePlan:
    """Tasks for the immediate channels, plus whether the event joins the digest."""

    event: ClassifiedEvent
    tasks: tuple[DeliveryTask, ...]
    deferred: bool

    @property
    def channels(self) -> tuple[str, ...]:
        return tuple(t.channel for t in self.tasks)


class DeliveryRouter:
    def __init__(self, table: RoutingTable):
        errors = table.validate()
        if errors:
            raise ConfigError("; ".join(errors))
        self.table = table

    def route(self, classified: ClassifiedEvent) -> RoutePlan:
        route = self.table.route_for(classified.tier)
        notification = render_event(classified)
        tasks = tuple(
            DeliveryTask.for_event(classified, channel, notification)
            for channel in route.immediate
        )
        return RoutePlan(event=classified, tasks=tasks, deferred=route.digest)
