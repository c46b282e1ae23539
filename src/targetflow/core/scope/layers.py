"""
Camadas de escopo para expor valores de dependências a um comando.

Cadeia (da mais baixa para a mais alta):

    base       (read-only)  envir do usuário, nunca copiado nem escrito
    static                  valores de targets não dinâmicos já construídos
    aggregate               coleções completas de targets dinâmicos
    branch                  valores individuais de sub-targets
    ephemeral  (por build)  ligações do elemento de um sub-target em execução

`namespace()` achata a cadeia em um dict novo para `exec`/`eval`: o
comando pode reatribuir nomes livremente sem afetar nenhuma camada.

Estratégias de memória (MemoryStrategy):
    - keep:      valores ficam ligados até o fim da run
    - autoclean: um valor é descarregado quando o último consumidor termina
    - unload:    valores são descarregados logo após cada uso

Invariantes:
    - `bind`/`unbind` em uma camada nunca afetam a base nem camadas irmãs
    - A camada base rejeita escrita (`ScopeError`)
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from targetflow.core.config.options import MemoryStrategy
from targetflow.core.exceptions import TargetFlowException
from targetflow.core.plan.sentinels import file_in, file_out, ignore, report_in


_MISSING = object()

LAYER_ORDER = ("base", "static", "aggregate", "branch")


@dataclass(frozen=True)
class ScopeError(TargetFlowException):
    """Escrita em camada read-only ou camada desconhecida."""


class ScopeLayer:
    """Um mapa de ligações com ponteiro para a camada pai."""

    def __init__(
        self,
        name: str,
        parent: Optional["ScopeLayer"] = None,
        *,
        read_only: bool = False,
        bindings: Optional[Mapping[str, Any]] = None,
    ):
        self.name = name
        self.parent = parent
        self.read_only = read_only
        self._bindings: Mapping[str, Any] = bindings if bindings is not None else {}

    def _check_writable(self) -> None:
        if self.read_only:
            raise ScopeError(message=f"Camada '{self.name}' é read-only", details={"layer": self.name})

    def bind(self, name: str, value: Any) -> None:
        self._check_writable()
        self._bindings[name] = value  # type: ignore[index]

    def unbind(self, name: str) -> bool:
        self._check_writable()
        return self._bindings.pop(name, _MISSING) is not _MISSING  # type: ignore[union-attr]

    def lookup(self, name: str, default: Any = _MISSING) -> Any:
        layer: Optional[ScopeLayer] = self
        while layer is not None:
            if name in layer._bindings:
                return layer._bindings[name]
            layer = layer.parent
        if default is _MISSING:
            raise KeyError(name)
        return default

    def __contains__(self, name: object) -> bool:
        layer: Optional[ScopeLayer] = self
        while layer is not None:
            if name in layer._bindings:
                return True
            layer = layer.parent
        return False

    def local_names(self) -> List[str]:
        return list(self._bindings)

    def chain(self) -> List["ScopeLayer"]:
        """Camadas da base até esta."""
        out: List[ScopeLayer] = []
        layer: Optional[ScopeLayer] = self
        while layer is not None:
            out.append(layer)
            layer = layer.parent
        return list(reversed(out))

    def __repr__(self) -> str:
        return f"ScopeLayer({self.name!r}, n={len(self._bindings)})"


class ScopeManager:
    """Pilha explícita de camadas + política de memória."""

    def __init__(
        self,
        envir: Optional[Mapping[str, Any]] = None,
        strategy: MemoryStrategy = MemoryStrategy.KEEP,
    ):
        self.strategy = MemoryStrategy(strategy)
        self.base = ScopeLayer("base", read_only=True, bindings=envir if envir is not None else {})
        self.static = ScopeLayer("static", self.base, bindings={})
        self.aggregate = ScopeLayer("aggregate", self.static, bindings={})
        self.branch = ScopeLayer("branch", self.aggregate, bindings={})
        self._layers: Dict[str, ScopeLayer] = {
            "base": self.base,
            "static": self.static,
            "aggregate": self.aggregate,
            "branch": self.branch,
        }
        self._where: Dict[str, str] = {}
        self._pending: Dict[str, int] = {}
        self._lock = threading.RLock()

    def layer(self, name: str) -> ScopeLayer:
        try:
            return self._layers[name]
        except KeyError:
            raise ScopeError(message=f"Camada desconhecida: {name}", details={"layer": name}) from None

    # ------------------------------------------------------------------
    # Ligações
    # ------------------------------------------------------------------
    def load(self, name: str, value: Any, layer: str = "static") -> None:
        target = self.layer(layer)
        with self._lock:
            previous = self._where.get(name)
            if previous is not None and previous != layer:
                self._layers[previous].unbind(name)
            target.bind(name, value)
            self._where[name] = layer

    def unload(self, name: str) -> bool:
        with self._lock:
            layer = self._where.pop(name, None)
            if layer is None:
                return False
            return self._layers[layer].unbind(name)

    def is_loaded(self, name: str) -> bool:
        with self._lock:
            return name in self._where

    def get(self, name: str) -> Any:
        """Valor ligado em qualquer camada (KeyError se ausente)."""
        with self._lock:
            return self.branch.lookup(name)

    def loaded(self) -> List[str]:
        with self._lock:
            return sorted(self._where)

    def namespace(self, extra: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        Visão achatada (dict novo) da cadeia, com `extra` em uma camada
        efêmera no topo. Sentinelas ficam disponíveis sob a base.
        """
        with self._lock:
            ephemeral = ScopeLayer("ephemeral", self.branch, bindings=dict(extra or {}))
            flat: Dict[str, Any] = {
                "file_in": file_in,
                "file_out": file_out,
                "report_in": report_in,
                "ignore": ignore,
            }
            for layer in ephemeral.chain():
                flat.update(layer._bindings)
        return flat

    def resolve(
        self,
        names: Iterable[str],
        loader: Callable[[str], Tuple[Any, str]],
        extra: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Carrega os nomes ausentes via `loader(name) -> (valor, camada)` e
        devolve a visão achatada, tudo sob o mesmo lock: um `release`
        concorrente não descarrega um nome entre a carga e o achatamento.
        """
        with self._lock:
            for name in names:
                if name not in self._where:
                    value, layer = loader(name)
                    self.load(name, value, layer)
            return self.namespace(extra)

    # ------------------------------------------------------------------
    # Estratégia de memória
    # ------------------------------------------------------------------
    def register_consumers(self, consumers: Mapping[str, Iterable[str]]) -> None:
        """
        Registra, para cada valor, quantos consumidores ainda vão usá-lo
        (`consumers[name]` = nomes que dependem de `name`).
        """
        with self._lock:
            self._pending = {name: len(set(users)) for name, users in consumers.items()}

    def add_consumers(self, name: str, count: int) -> None:
        with self._lock:
            self._pending[name] = self._pending.get(name, 0) + count

    def release(self, name: str) -> bool:
        """
        Um consumidor de `name` terminou. Retorna True se o valor foi
        descarregado segundo a estratégia corrente.
        """
        with self._lock:
            if self.strategy == MemoryStrategy.KEEP:
                return False
            if self.strategy == MemoryStrategy.UNLOAD:
                return self.unload(name)
            remaining = self._pending.get(name, 0) - 1
            self._pending[name] = max(remaining, 0)
            if remaining <= 0:
                return self.unload(name)
            return False

    def pending(self, name: str) -> int:
        with self._lock:
            return self._pending.get(name, 0)


__all__ = ["LAYER_ORDER", "ScopeError", "ScopeLayer", "ScopeManager"]
