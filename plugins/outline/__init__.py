"""Outline: documents, day notes and their checklist tasks."""

from plugins.outline.plugin import OutlinePlugin

__all__ = ["OutlinePlugin"]
