"""Oura Ring: daily scores, sleep records, workouts, sessions, tags, heart rate."""

from plugins.oura.plugin import OuraPlugin

__all__ = ["OuraPlugin"]
