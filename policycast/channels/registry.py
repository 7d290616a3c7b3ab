"""
Channel registry: channel name -> adapter instance.

One registry is built per pipeline at startup and passed explicitly, so
two pipelines in one process never share adapters.
"""

from __future__ import annotations

from typing import Iterable

from .base import ChannelAdapter


class ChannelRegistry:
    def __init__(self, adapters: Iterable[ChannelAdapter] = ()):
        self._adapters: dict[str, ChannelAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ChannelAdapter) -> None:
        """Register an adapter by its channel name (replaces any previous one)."""
        self._adapters[adapter.channel] = adapter

    def get(self, channel: str) -> ChannelAdapter | None:
        return self._adapters.get(channel)

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def missing(self, channels: Iterable[str]) -> list[str]:
        """Channels from ``channels`` with no registered adapter."""
        return sorted(set(channels) - set(self._adapters))

    def __contains__(self, channel: str) -> bool:
        return channel in self._adapters
