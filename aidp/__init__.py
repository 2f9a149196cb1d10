"""
aidp core: isolated git worktrees per branch and pull request, concurrent
chunk processing, and a structured, redacting logger.
"""

__version__ = "0.1.0"
