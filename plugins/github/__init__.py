"""GitHub: push, pull request and issue activity on configured repositories."""

from plugins.github.plugin import GitHubPlugin

__all__ = ["GitHubPlugin"]
