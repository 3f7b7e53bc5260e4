"""
Insert dependency graph implementation.

This module orders newly created entities so that referenced rows are written
before the rows that point at them, and detects cycles among them.
"""
from .graph import CycleStatus, GraphNode, InsertDependencyGraph, order_operations

__all__ = ["InsertDependencyGraph", "CycleStatus", "GraphNode", "order_operations"]
