"""
Montagem do DependencyGraph a partir das Specifications.

Arestas criadas:
    - target → targets referenciados (comando, funções importadas, relatórios,
      expressão do trigger, `dynamic.over`/`by`)
    - target → imports referenciados
    - target → nó de arquivo de cada entrada declarada (`file_in`, `report_in`)
    - target → produtor, quando uma entrada declarada é a saída (`file_out`)
      de outro target
    - import → imports que ele usa

O grafo é validado (ciclos) antes de ser devolvido.
"""

from __future__ import annotations

from typing import Dict, Mapping

from targetflow.core.exceptions import PlanError
from targetflow.core.plan.types import Plan
from targetflow.core.spec.builder import ImportSpecification, Specification

from .graph import DependencyGraph, NodeKind, file_key


def file_producers(specs: Mapping[str, Specification]) -> Dict[str, str]:
    """Mapa caminho → target que o declara como saída."""
    producers: Dict[str, str] = {}
    for spec in specs.values():
        for path in spec.files_out:
            other = producers.get(path)
            if other is not None and other != spec.target:
                raise PlanError(
                    message=f"Arquivo '{path}' declarado como saída por dois targets",
                    details={"path": path, "targets": sorted([other, spec.target])},
                )
            producers[path] = spec.target
    return producers


def build_graph(
    plan: Plan,
    specs: Mapping[str, Specification],
    import_specs: Mapping[str, ImportSpecification],
) -> DependencyGraph:
    """
    Raises:
        CycleError: se os targets formarem um ciclo.
        PlanError: se dois targets declararem a mesma saída.
    """
    graph = DependencyGraph()
    for target in plan:
        graph.add_node(target.name, NodeKind.TARGET)
    for name in import_specs:
        graph.add_node(name, NodeKind.IMPORT)

    producers = file_producers(specs)

    for target in plan:
        spec = specs[target.name]
        for dep in spec.dependencies:
            if dep not in graph:
                graph.add_node(dep, NodeKind.IMPORT)
            graph.add_edge(target.name, dep)
        for path in spec.input_files:
            node = graph.add_node(file_key(path), NodeKind.FILE)
            graph.add_edge(target.name, node.name)
            producer = producers.get(path)
            if producer is not None and producer != target.name:
                graph.add_edge(target.name, producer)

    for name, ispec in import_specs.items():
        for dep in ispec.import_deps:
            if dep not in graph:
                graph.add_node(dep, NodeKind.IMPORT)
            graph.add_edge(name, dep)

    graph.validate()
    return graph


__all__ = ["build_graph", "file_producers"]
