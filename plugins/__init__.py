"""Provider plugins for the sync engine.

Each provider package carries its own endpoints, typed instance
configuration and normalizers, and exposes one SyncPlugin subclass.
Plugins are looked up through an injected PluginRegistry.
"""
