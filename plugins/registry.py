"""
Plugin registry.

Built once at startup and handed to the engine, the scheduler and the
API routers. Nothing looks plugins up through module globals.

Usage::

    registry = build_default_registry(settings)
    plugin = registry.get("oura")
"""
from __future__ import annotations
from typing import Iterator, Optional

import structlog

from core.integrations.oauth_manager import OAuthConfig
from patterns.domain_config import EngineSettings
from plugins.base import SyncPlugin

logger = structlog.get_logger()


class UnknownPluginError(KeyError):
    """No plugin is registered for the service name."""


class PluginRegistry:
    def __init__(self) -> None:
        self._plugins: dict[str, SyncPlugin] = {}

    def register(self, plugin: SyncPlugin) -> SyncPlugin:
        if not plugin.service:
            raise ValueError(f"{type(plugin).__name__} has no service name")
        if plugin.service in self._plugins:
            raise ValueError(f"Plugin already registered: {plugin.service}")
        self._plugins[plugin.service] = plugin
        logger.debug("plugin_registered", service=plugin.service, instance_types=list(plugin.instance_types))
        return plugin

    def get(self, service: str) -> SyncPlugin:
        try:
            return self._plugins[service]
        except KeyError:
            raise UnknownPluginError(service) from None

    def services(self) -> list[str]:
        return sorted(self._plugins)

    def oauth_configs(self) -> list[OAuthConfig]:
        return [p.oauth for p in self._plugins.values() if p.oauth is not None]

    def __contains__(self, service: object) -> bool:
        return service in self._plugins

    def __iter__(self) -> Iterator[SyncPlugin]:
        return iter(self._plugins.values())

    def __len__(self) -> int:
        return len(self._plugins)


def build_default_registry(settings: Optional[EngineSettings] = None) -> PluginRegistry:
    """Registry with every bundled provider. OAuth clients come from env."""
    from plugins.github.config import oauth_config_from_env as github_oauth
    from plugins.github.plugin import GitHubPlugin
    from plugins.oura.config import oauth_config_from_env as oura_oauth
    from plugins.oura.plugin import OuraPlugin
    from plugins.outline.plugin import OutlinePlugin

    settings = settings or EngineSettings.default()
    registry = PluginRegistry()
    registry.register(OuraPlugin(oauth=oura_oauth()))
    registry.register(OutlinePlugin(page_cap=settings.page_cap))
    registry.register(GitHubPlugin(oauth=github_oauth()))
    return registry
