"""
Ramificação dinâmica: de valores resolvidos para sub-targets (branches).

Quando um target dinâmico fica pronto, os valores das dependências em
`dynamic.over` (e `by`) são conhecidos. Este módulo os fatia em
elementos e combina os elementos segundo o padrão declarado:

    - map:     zip elemento a elemento (tamanhos devem coincidir)
    - cross:   produto cartesiano (ordem de declaração de `over`)
    - group:   um branch por valor distinto de `by` (ordem de aparição)
    - combine: um único branch sobre os agregados completos

Fatiamento de um valor:
    - dependência dinâmica  → um elemento por branch dela (na ordem)
    - pandas.DataFrame       → linhas (`iloc[[i]]`, DataFrames de 1 linha)
    - pandas.Series          → `iloc[i]`
    - numpy.ndarray          → eixo 0
    - list / tuple           → itens

Identidade de um branch: `<pai>_<hash8>`, onde o hash cobre o nome do
pai, o padrão e os hashes de conteúdo das fatias (mais um contador de
ocorrência para conteúdos repetidos). Runs com as mesmas entradas
reutilizam as mesmas entradas de cache.

O limite `max_expand` mantém apenas os primeiros N branches.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from targetflow.core.exceptions import DynamicExpansionError
from targetflow.core.meta.hashing import canonical_hash, hash_value
from targetflow.core.plan.types import DynamicPattern, Target


@dataclass(frozen=True)
class Branch:
    """Um sub-target dinâmico."""

    name: str
    parent: str
    index: int
    key: str
    slices: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
    slice_hashes: Dict[str, str] = field(default_factory=dict)
    sources: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "parent": self.parent,
            "index": self.index,
            "key": self.key,
            "slice_hashes": dict(self.slice_hashes),
            "sources": list(self.sources),
        }


@dataclass(frozen=True)
class Sliced:
    """Elementos de uma dependência, com hashes e (se dinâmica) branches de origem."""

    elements: List[Any]
    hashes: List[str]
    sources: Optional[List[str]] = None
    whole: Any = None


def slice_value(name: str, value: Any) -> List[Any]:
    if isinstance(value, pd.DataFrame):
        return [value.iloc[[i]] for i in range(len(value))]
    if isinstance(value, pd.Series):
        return [value.iloc[i] for i in range(len(value))]
    if isinstance(value, np.ndarray):
        if value.ndim == 0:
            raise DynamicExpansionError(
                message=f"Não é possível ramificar sobre '{name}': array escalar",
                details={"dependency": name},
            )
        return [value[i] for i in range(value.shape[0])]
    if isinstance(value, (list, tuple)):
        return list(value)
    raise DynamicExpansionError(
        message=f"Não é possível ramificar sobre '{name}' ({type(value).__name__})",
        details={"dependency": name, "type": type(value).__name__},
        hint="Use list, tuple, numpy.ndarray, pandas.Series/DataFrame ou outro target dinâmico.",
    )


def prepare(
    name: str,
    value: Any,
    *,
    branch_names: Optional[Sequence[str]] = None,
    branch_hashes: Optional[Sequence[str]] = None,
) -> Sliced:
    """Fatia o valor de uma dependência (dinâmica ou não)."""
    if branch_names is not None:
        elements = list(value)
        hashes = list(branch_hashes) if branch_hashes is not None else [hash_value(e) for e in elements]
        return Sliced(elements=elements, hashes=hashes, sources=list(branch_names), whole=value)
    elements = slice_value(name, value)
    return Sliced(elements=elements, hashes=[hash_value(e) for e in elements], whole=value)


def _subset(whole: Any, elements: List[Any], indices: List[int]) -> Any:
    if isinstance(whole, pd.DataFrame):
        return whole.iloc[indices]
    if isinstance(whole, pd.Series):
        return whole.iloc[indices]
    if isinstance(whole, np.ndarray):
        return whole[indices]
    return [elements[i] for i in indices]


def _combinations(target: Target, sliced: Mapping[str, Sliced]) -> List[Tuple[Dict[str, Any], Dict[str, str], List[str]]]:
    """(ligações, hashes das fatias, branches de origem) por branch, antes do limite."""
    dyn = target.dynamic
    over = list(dyn.over)
    out: List[Tuple[Dict[str, Any], Dict[str, str], List[str]]] = []

    if dyn.pattern == DynamicPattern.MAP:
        lengths = {n: len(sliced[n].elements) for n in over}
        if len(set(lengths.values())) > 1:
            raise DynamicExpansionError(
                message=f"map de '{target.name}' exige dependências de mesmo tamanho",
                details={"target": target.name, "lengths": lengths},
            )
        n = next(iter(lengths.values()))
        for i in range(n):
            out.append(_binding(sliced, {name: i for name in over}))
        return out

    if dyn.pattern == DynamicPattern.CROSS:
        ranges = [range(len(sliced[n].elements)) for n in over]
        for combo in itertools.product(*ranges):
            out.append(_binding(sliced, dict(zip(over, combo))))
        return out

    if dyn.pattern == DynamicPattern.GROUP:
        labels = sliced[dyn.by]
        for name in over:
            if len(sliced[name].elements) != len(labels.elements):
                raise DynamicExpansionError(
                    message=f"group de '{target.name}': '{name}' e '{dyn.by}' têm tamanhos diferentes",
                    details={"target": target.name, "over": name, "by": dyn.by},
                )
        groups: Dict[str, List[int]] = {}
        label_of: Dict[str, Any] = {}
        for i, h in enumerate(labels.hashes):
            groups.setdefault(h, []).append(i)
            label_of.setdefault(h, labels.elements[i])
        for h, indices in groups.items():
            bindings: Dict[str, Any] = {dyn.by: label_of[h]}
            hashes: Dict[str, str] = {dyn.by: h}
            for name in over:
                s = sliced[name]
                bindings[name] = _subset(s.whole, s.elements, indices)
                hashes[name] = canonical_hash([s.hashes[i] for i in indices])
            out.append((bindings, hashes, []))
        return out

    bindings = {name: sliced[name].whole for name in over}
    hashes = {name: canonical_hash(sliced[name].hashes) for name in over}
    out.append((bindings, hashes, []))
    return out


def _binding(sliced: Mapping[str, Sliced], picks: Mapping[str, int]) -> Tuple[Dict[str, Any], Dict[str, str], List[str]]:
    bindings: Dict[str, Any] = {}
    hashes: Dict[str, str] = {}
    sources: List[str] = []
    for name, i in picks.items():
        s = sliced[name]
        bindings[name] = s.elements[i]
        hashes[name] = s.hashes[i]
        if s.sources is not None:
            sources.append(s.sources[i])
    return bindings, hashes, sources


def branch_name(parent: str, key: str) -> str:
    return f"{parent}_{key[:8]}"


def expand(target: Target, sliced: Mapping[str, Sliced], *, max_expand: Optional[int] = None) -> List[Branch]:
    """
    Calcula os branches de um target dinâmico.

    Raises:
        DynamicExpansionError: valores não fatiáveis ou tamanhos incompatíveis.
    """
    if target.dynamic is None:
        raise DynamicExpansionError(message=f"Target '{target.name}' não é dinâmico", details={"target": target.name})

    combos = _combinations(target, sliced)
    if max_expand is not None:
        combos = combos[:max_expand]

    branches: List[Branch] = []
    seen: Dict[str, int] = {}
    for index, (bindings, hashes, sources) in enumerate(combos):
        content = canonical_hash(
            {
                "parent": target.name,
                "pattern": target.dynamic.pattern.value,
                "slices": [(n, hashes[n]) for n in target.dynamic.names if n in hashes],
            }
        )
        occurrence = seen.get(content, 0)
        seen[content] = occurrence + 1
        key = canonical_hash({"content": content, "occurrence": occurrence})
        branches.append(
            Branch(
                name=branch_name(target.name, key),
                parent=target.name,
                index=index,
                key=key,
                slices=bindings,
                slice_hashes=hashes,
                sources=tuple(sources),
            )
        )
    return branches


__all__ = ["Branch", "Sliced", "branch_name", "expand", "prepare", "slice_value"]
