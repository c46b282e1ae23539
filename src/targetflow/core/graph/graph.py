# src/targetflow/core/graph/graph.py
"""
Grafo de dependências do TargetFlow (DAG).

Nós possuem um tipo (target, import, file, branch) e uma ordem de
declaração. Uma aresta u → v significa "u requer o valor corrente de v".

O grafo é construído inteiro antes da execução e validado uma única vez
(`validate`). Durante a run, sub-targets dinâmicos são inseridos com
`add_branch` sem revalidação: um branch depende apenas de nós já
resolvidos e só é requerido pelo seu pai, o que preserva a aciclicidade
por construção.

Decisões arquiteturais:
    - Detecção de ciclo por DFS com coloração; o ciclo completo é
      reportado com o primeiro nó repetido no final
    - Ordenação topológica determinística (Kahn com heap); empates são
      resolvidos pela ordem de declaração
    - Ciclos entre imports (funções mutuamente recursivas) são legítimos:
      ciclo e ordenação consideram apenas nós target/branch

Invariantes:
    - Nenhum target aparece na ordem antes de suas dependências
    - A mesma entrada sempre produz a mesma ordem
    - Arestas entre nós já construídos nunca são alteradas

Limites explícitos:
    - Não executa targets
    - Não decide staleness
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from targetflow.core.exceptions import CycleError, PlanError, UnknownTargetError


class NodeKind(str, Enum):
    TARGET = "target"
    IMPORT = "import"
    FILE = "file"
    BRANCH = "branch"


_BUILDABLE = (NodeKind.TARGET, NodeKind.BRANCH)


@dataclass(frozen=True)
class Node:
    name: str
    kind: NodeKind
    order: int
    parent: Optional[str] = None

    @property
    def buildable(self) -> bool:
        return self.kind in _BUILDABLE


def file_key(path: str) -> str:
    """Identidade do nó de um arquivo declarado (não colide com nomes de targets)."""
    return f"file:{path}"


class DependencyGraph:
    """Grafo dirigido com arestas u → v ("u requer v")."""

    def __init__(self) -> None:
        self._nodes: Dict[str, Node] = {}
        self._deps: Dict[str, Dict[str, None]] = {}
        self._users: Dict[str, Dict[str, None]] = {}

    # ------------------------------------------------------------------
    # Construção
    # ------------------------------------------------------------------
    def add_node(self, name: str, kind: NodeKind = NodeKind.TARGET, *, parent: Optional[str] = None) -> Node:
        kind = NodeKind(kind)
        existing = self._nodes.get(name)
        if existing is not None:
            if existing.kind != kind:
                raise PlanError(
                    message=f"Nó '{name}' já existe com tipo '{existing.kind.value}'",
                    details={"name": name, "existing": existing.kind.value, "requested": kind.value},
                )
            return existing
        node = Node(name=name, kind=kind, order=len(self._nodes), parent=parent)
        self._nodes[name] = node
        self._deps[name] = {}
        self._users[name] = {}
        return node

    def add_edge(self, u: str, v: str) -> None:
        for n in (u, v):
            if n not in self._nodes:
                raise UnknownTargetError(message=f"Nó desconhecido no grafo: {n}", details={"name": n})
        self._deps[u][v] = None
        self._users[v][u] = None

    def add_branch(self, name: str, parent: str, depends_on: Iterable[str] = ()) -> Node:
        """
        Insere um sub-target dinâmico: branch → depends_on e parent → branch.
        Não revalida o grafo.
        """
        node = self.add_node(name, NodeKind.BRANCH, parent=parent)
        for dep in depends_on:
            self.add_edge(name, dep)
        self.add_edge(parent, name)
        return node

    # ------------------------------------------------------------------
    # Consulta
    # ------------------------------------------------------------------
    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def node(self, name: str) -> Node:
        try:
            return self._nodes[name]
        except KeyError:
            raise UnknownTargetError(message=f"Nó desconhecido no grafo: {name}", details={"name": name}) from None

    def kind(self, name: str) -> NodeKind:
        return self.node(name).kind

    def nodes(self, kind: Optional[NodeKind] = None) -> List[str]:
        if kind is None:
            return list(self._nodes)
        return [n for n, node in self._nodes.items() if node.kind == kind]

    def targets(self) -> List[str]:
        return self.nodes(NodeKind.TARGET)

    def branches(self, parent: str) -> List[str]:
        return [n for n, node in self._nodes.items() if node.kind == NodeKind.BRANCH and node.parent == parent]

    def dependencies(self, name: str) -> List[str]:
        self.node(name)
        return list(self._deps[name])

    def dependents(self, name: str) -> List[str]:
        self.node(name)
        return list(self._users[name])

    def _closure(self, start: str, edges: Dict[str, Dict[str, None]]) -> List[str]:
        self.node(start)
        seen: Set[str] = set()
        out: List[str] = []
        stack = list(reversed(list(edges[start])))
        while stack:
            n = stack.pop()
            if n in seen:
                continue
            seen.add(n)
            out.append(n)
            stack.extend(reversed(list(edges[n])))
        return out

    def upstream(self, name: str) -> List[str]:
        """Todas as dependências transitivas de `name`."""
        return self._closure(name, self._deps)

    def downstream(self, name: str) -> List[str]:
        """Todos os nós que dependem transitivamente de `name`."""
        return self._closure(name, self._users)

    def is_ready(self, name: str, satisfied: Iterable[str]) -> bool:
        """
        Pronto = toda dependência direta construível está em `satisfied`.
        Imports e arquivos são externos e contam como satisfeitos.
        """
        done = satisfied if isinstance(satisfied, (set, frozenset, dict)) else set(satisfied)
        for dep in self._deps[name]:
            if self._nodes[dep].buildable and dep not in done:
                return False
        return True

    # ------------------------------------------------------------------
    # Validação
    # ------------------------------------------------------------------
    def find_cycle(self) -> Optional[List[str]]:
        """Primeiro ciclo entre nós construíveis (DFS com coloração), ou None."""
        white, grey, black = 0, 1, 2
        color: Dict[str, int] = {n: white for n, node in self._nodes.items() if node.buildable}

        for root in color:
            if color[root] != white:
                continue
            path: List[str] = []
            stack: List[Tuple[str, Iterable[str]]] = [(root, iter(self._deps[root]))]
            color[root] = grey
            path.append(root)
            while stack:
                current, children = stack[-1]
                advanced = False
                for child in children:
                    if child not in color:
                        continue
                    if color[child] == grey:
                        start = path.index(child)
                        return path[start:] + [child]
                    if color[child] == white:
                        color[child] = grey
                        path.append(child)
                        stack.append((child, iter(self._deps[child])))
                        advanced = True
                        break
                if not advanced:
                    color[current] = black
                    path.pop()
                    stack.pop()
        return None

    def validate(self) -> None:
        """
        Raises:
            CycleError: com o ciclo completo em `details["cycle"]`.
        """
        cycle = self.find_cycle()
        if cycle is not None:
            raise CycleError(
                message="Cycle detected: " + " -> ".join(cycle),
                details={"cycle": cycle},
                hint="Remova uma das referências do ciclo; nenhum target foi executado.",
            )

    def topological_order(self) -> List[str]:
        """Ordem topológica determinística dos nós construíveis."""
        buildable = [n for n, node in self._nodes.items() if node.buildable]
        incoming: Dict[str, int] = {
            n: sum(1 for d in self._deps[n] if self._nodes[d].buildable) for n in buildable
        }
        heap: List[Tuple[int, str]] = [(self._nodes[n].order, n) for n in buildable if incoming[n] == 0]
        heapq.heapify(heap)
        order: List[str] = []
        while heap:
            _, n = heapq.heappop(heap)
            order.append(n)
            for user in self._users[n]:
                if user in incoming:
                    incoming[user] -= 1
                    if incoming[user] == 0:
                        heapq.heappush(heap, (self._nodes[user].order, user))
        if len(order) != len(buildable):
            self.validate()
        return order

    def __repr__(self) -> str:
        return f"DependencyGraph(nodes={len(self._nodes)})"


__all__ = ["DependencyGraph", "Node", "NodeKind", "file_key"]
