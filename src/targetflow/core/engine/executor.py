"""
Executores: quem roda o comando de um target.

Contrato (`Executor`):
    execute(target, namespace, *, seed, store_ref=None) -> ExecutionResult

O core só precisa do sinal de conclusão e do valor (ou do erro). Falhas
são classificadas em três classes; apenas retry e relatório diferem:

    - USER:           o comando levantou uma exceção     → BuildError
    - TIMEOUT:        orçamento elapsed/CPU excedido     → TargetTimeoutError
    - INFRASTRUCTURE: worker morreu, serialização falhou → WorkerError

Implementações:
    - LocalExecutor: no processo corrente. Com orçamento `elapsed`, o
      comando roda em uma thread auxiliar e a espera tem timeout (a
      thread é abandonada). O orçamento de CPU é verificado ao final
      pelo tempo de CPU da thread.
    - ProcessExecutor: um processo por target (`multiprocessing`). Só
      as ligações referenciadas pelo comando são enviadas. Timeout
      elapsed termina o processo; CPU via RLIMIT_CPU. Com
      `store_ref`, o worker grava o valor pelo plugin de formato e
      devolve apenas a referência.

Sementes: `random` e `numpy.random` são semeados antes de cada comando.
"""

from __future__ import annotations

import math
import multiprocessing
import pickle
import random
import signal
import threading
import time
import warnings
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import numpy as np

from targetflow.core.exceptions import (
    BuildError,
    CacheError,
    TargetFlowException,
    TargetTimeoutError,
    WorkerError,
)
from targetflow.core.plan.sentinels import SENTINEL_NAMES
from targetflow.core.plan.types import Target
from targetflow.core.spec.analyzer import analyze_command

from .evaluate import evaluate_command


class FailureKind(str, Enum):
    USER = "user"
    TIMEOUT = "timeout"
    INFRASTRUCTURE = "infrastructure"


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, TargetTimeoutError):
        return FailureKind.TIMEOUT
    if isinstance(exc, (WorkerError, CacheError)):
        return FailureKind.INFRASTRUCTURE
    return FailureKind.USER


@dataclass(frozen=True)
class ExecutionResult:
    """Valor produzido (ou `ref`, quando o worker gravou o valor)."""

    value: Any = None
    ref: Optional[str] = None
    value_hash: Optional[str] = None
    elapsed: float = 0.0
    cpu: float = 0.0
    warnings: List[str] = field(default_factory=list)

    @property
    def stored(self) -> bool:
        return self.ref is not None


@runtime_checkable
class Executor(Protocol):
    def execute(
        self,
        target: Target,
        namespace: Dict[str, Any],
        *,
        seed: int,
        store_ref: Optional[Path] = None,
    ) -> ExecutionResult:
        ...


def seed_rngs(seed: int) -> None:
    random.seed(seed)
    np.random.seed(seed % (2 ** 32))


def _build_error(target: Target, exc: BaseException) -> BuildError:
    return BuildError(
        message=f"{exc.__class__.__name__}: {exc}",
        details={
            "target": target.name,
            "exc_type": exc.__class__.__name__,
            "exc_message": str(exc),
        },
        hint="Corrija o comando do target (ou suas dependências) e rode o build novamente.",
    )


def _timeout_error(target: Target, budget: str, limit: float) -> TargetTimeoutError:
    return TargetTimeoutError(
        message=f"Target '{target.name}' excedeu o orçamento {budget} de {limit}s",
        details={"target": target.name, "budget": budget, "limit": limit},
    )


# ---------------------------------------------------------------------------
# LocalExecutor
# ---------------------------------------------------------------------------

class LocalExecutor:
    """Executa comandos no processo corrente."""

    def _run(self, target: Target, namespace: Dict[str, Any], seed: int) -> ExecutionResult:
        seed_rngs(seed)
        t0 = time.perf_counter()
        c0 = time.thread_time()
        try:
            value = evaluate_command(target.command, namespace)
        except TargetFlowException:
            raise
        except Exception as exc:
            raise _build_error(target, exc) from exc
        cpu = time.thread_time() - c0
        elapsed = time.perf_counter() - t0
        if target.cpu is not None and cpu > target.cpu:
            raise _timeout_error(target, "cpu", target.cpu)
        return ExecutionResult(value=value, elapsed=elapsed, cpu=cpu)

    def execute(
        self,
        target: Target,
        namespace: Dict[str, Any],
        *,
        seed: int,
        store_ref: Optional[Path] = None,
    ) -> ExecutionResult:
        if target.elapsed is None:
            return self._run(target, namespace, seed)

        box: Dict[str, Any] = {}

        def _worker() -> None:
            try:
                box["result"] = self._run(target, namespace, seed)
            except BaseException as exc:  # propagado para a thread chamadora
                box["error"] = exc

        thread = threading.Thread(target=_worker, name=f"targetflow-{target.name}", daemon=True)
        thread.start()
        thread.join(timeout=target.elapsed)
        if thread.is_alive():
            raise _timeout_error(target, "elapsed", target.elapsed)
        if "error" in box:
            raise box["error"]
        return box["result"]


# ---------------------------------------------------------------------------
# ProcessExecutor
# ---------------------------------------------------------------------------

def _apply_cpu_limit(cpu: Optional[float]) -> None:
    if cpu is None:
        return
    import resource

    used = resource.getrusage(resource.RUSAGE_SELF).ru_utime
    soft = int(math.ceil(used + cpu))
    _, hard = resource.getrlimit(resource.RLIMIT_CPU)
    if hard != resource.RLIM_INFINITY:
        soft = min(soft, hard)
    resource.setrlimit(resource.RLIMIT_CPU, (soft, hard))


def _worker_main(conn, command, bindings, seed, cpu, store_ref, fmt) -> None:
    try:
        _apply_cpu_limit(cpu)
        seed_rngs(seed)
        t0 = time.perf_counter()
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                value = evaluate_command(command, dict(bindings), memo=False)
            except Exception as exc:
                conn.send(("user", exc.__class__.__name__, str(exc)))
                return
        elapsed = time.perf_counter() - t0
        messages = [str(w.message) for w in caught]

        if store_ref is not None:
            from targetflow.core.cache.formats import get_format

            plugin = get_format(fmt)
            try:
                ref = plugin.write(value, Path(store_ref))
                value_hash = plugin.value_hash(value)
            except Exception as exc:
                conn.send(("infrastructure", exc.__class__.__name__, str(exc)))
                return
            conn.send(("ok", None, ref, value_hash, elapsed, messages))
            return

        try:
            conn.send(("ok", value, None, None, elapsed, messages))
        except (pickle.PicklingError, TypeError, AttributeError) as exc:
            conn.send(("infrastructure", exc.__class__.__name__, f"valor não serializável: {exc}"))
    finally:
        conn.close()


class ProcessExecutor:
    """Um processo worker por target."""

    def __init__(self, *, start_method: Optional[str] = None):
        if start_method is None and "fork" in multiprocessing.get_all_start_methods():
            start_method = "fork"
        self._mp = multiprocessing.get_context(start_method)

    @staticmethod
    def referenced_bindings(target: Target, namespace: Dict[str, Any]) -> Dict[str, Any]:
        names = set(analyze_command(target.command).names) | set(SENTINEL_NAMES)
        return {name: namespace[name] for name in names if name in namespace}

    def execute(
        self,
        target: Target,
        namespace: Dict[str, Any],
        *,
        seed: int,
        store_ref: Optional[Path] = None,
    ) -> ExecutionResult:
        bindings = self.referenced_bindings(target, namespace)
        parent_conn, child_conn = self._mp.Pipe(duplex=False)
        process = self._mp.Process(
            target=_worker_main,
            args=(child_conn, target.command, bindings, seed, target.cpu, store_ref, target.format),
            name=f"targetflow-{target.name}",
            daemon=True,
        )
        try:
            process.start()
        except (OSError, pickle.PicklingError, TypeError, AttributeError) as exc:
            raise WorkerError(
                message=f"Falha ao iniciar worker de '{target.name}': {exc}",
                details={"target": target.name, "exc_type": exc.__class__.__name__},
            ) from exc
        finally:
            child_conn.close()

        try:
            if not parent_conn.poll(target.elapsed):
                process.terminate()
                process.join()
                raise _timeout_error(target, "elapsed", target.elapsed)
            try:
                message = parent_conn.recv()
            except (EOFError, OSError):
                process.join()
                if target.cpu is not None and process.exitcode == -getattr(signal, "SIGXCPU", 0):
                    raise _timeout_error(target, "cpu", target.cpu) from None
                raise WorkerError(
                    message=f"Worker de '{target.name}' terminou sem resposta",
                    details={"target": target.name, "exitcode": process.exitcode},
                ) from None
            process.join()
        finally:
            parent_conn.close()

        status = message[0]
        if status == "ok":
            _, value, ref, value_hash, elapsed, messages = message
            return ExecutionResult(value=value, ref=ref, value_hash=value_hash, elapsed=elapsed, warnings=messages)
        _, exc_type, exc_message = message
        if status == "user":
            raise BuildError(
                message=f"{exc_type}: {exc_message}",
                details={"target": target.name, "exc_type": exc_type, "exc_message": exc_message},
                hint="Corrija o comando do target (ou suas dependências) e rode o build novamente.",
            )
        raise WorkerError(
            message=f"Falha de infraestrutura no worker de '{target.name}': {exc_message}",
            details={"target": target.name, "exc_type": exc_type, "exc_message": exc_message},
        )


__all__ = [
    "ExecutionResult",
    "Executor",
    "FailureKind",
    "LocalExecutor",
    "ProcessExecutor",
    "classify_failure",
    "seed_rngs",
]
