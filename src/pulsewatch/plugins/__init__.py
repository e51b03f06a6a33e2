"""Capture plugins.

A plugin observes some source of events and submits metrics to the tracker
it was set up with. The tracker only relies on the ``Plugin`` protocol:
a ``name`` plus ``setup(core, options)`` and ``teardown()``. Anything a
plugin replaces process-wide (hooks, patched methods) is acquired in setup
and released in teardown.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Generic, Optional, Protocol, TypeVar, runtime_checkable

if TYPE_CHECKING:
    from ..tracker import Tracker

OptionsT = TypeVar("OptionsT")


@runtime_checkable
class Plugin(Protocol):
    """Capability interface every capture plugin implements."""

    name: str

    def setup(self, core: "Tracker", options: Any = None) -> None:
        """Start capturing into ``core``."""

    def teardown(self) -> None:
        """Stop capturing and release everything acquired in setup."""


class BasePlugin(ABC, Generic[OptionsT]):
    """Convenience base: stores the core and options, then calls ``init``."""

    name: str = ""

    def __init__(self) -> None:
        self.core: Optional["Tracker"] = None
        self.options: Optional[OptionsT] = None

    def setup(self, core: "Tracker", options: Any = None) -> None:
        self.core = core
        self.options = self.parse_options(options)
        self.init()

    def parse_options(self, options: Any) -> OptionsT:
        """Turn the options passed to ``Tracker.use`` into this plugin's options."""
        return options

    @abstractmethod
    def init(self) -> None:
        """Start capturing. Called once from ``setup``."""

    @abstractmethod
    def teardown(self) -> None:
        """Stop capturing."""
