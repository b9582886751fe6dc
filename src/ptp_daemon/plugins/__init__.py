"""Built-in hardware plugins, keyed by the name they register under."""

from __future__ import annotations

from ..plugin import PluginFactory
from .e810 import e810

FACTORIES: dict[str, PluginFactory] = {
    "e810": e810,
}
