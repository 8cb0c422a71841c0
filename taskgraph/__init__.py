"""
taskgraph - dependency-aware task management engine.

Keeps a project's tasks as a validated dependency graph and uses AI
providers to expand, update and score them.
"""

__version__ = "0.1.0"
__author__ = "taskgraph Team"

from taskgraph.core.service import TaskGraphService

__all__ = ["TaskGraphService", "__version__"]
