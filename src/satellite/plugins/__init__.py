"""Plugin implementations, addressable by name."""

from collections.abc import Callable

from satellite.plugins.base import Plugin, PluginContext, PluginError
from satellite.plugins.diagnostic_plugin import DiagnosticPlugin
from satellite.plugins.http_plugin import HttpPlugin
from satellite.plugins.shell_plugin import ShellPlugin

PLUGINS: dict[str, Callable[[], Plugin]] = {
    HttpPlugin.name: HttpPlugin,
    ShellPlugin.name: ShellPlugin,
    DiagnosticPlugin.name: DiagnosticPlugin,
}


def get_plugin(name: str) -> Plugin:
    """Instantiate a plugin by name, raising KeyError for unknown names."""

    try:
        factory = PLUGINS[name]
    except KeyError:
        raise KeyError(f"Unknown plugin: {name}") from None
    return factory()


__all__ = [
    "PLUGINS",
    "DiagnosticPlugin",
    "HttpPlugin",
    "Plugin",
    "PluginContext",
    "PluginError",
    "ShellPlugin",
    "get_plugin",
]
