"""Reusable patterns shared by the sync engine.

Each module is self-contained: run-state workflow, repository layer
over the timeline models, and engine/instance configuration.
"""
