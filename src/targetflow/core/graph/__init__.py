"""
Graph Builder: DAG global de targets, imports, arquivos e sub-targets.
"""

from .builder import build_graph, file_producers
from .graph import DependencyGraph, Node, NodeKind, file_key

__all__ = ["build_graph", "file_producers", "DependencyGraph", "Node", "NodeKind", "file_key"]
