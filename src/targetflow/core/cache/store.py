"""Store de cache endereçado por nome (v1).

Layout persistido sob `root` (legível por leitores externos):

    values/<key><ext>               valor serializado pelo plugin de formato
    metadata/<key>.json             metadados da geração corrente (commit marker)
    metadata_previous/<key>.json    snapshot da geração anterior
    progress/history.jsonl          log append-only de eventos de build
    specifications/<hash>.json      análises de comandos memoizadas

Decisões (v1):
- `store()` grava primeiro o valor e depois os metadados; os metadados são
  o commit marker: uma entrada só existe quando ambos estão no disco
- Toda escrita é atômica (temporário + `os.replace`)
- Falhas de I/O viram `CacheError`
- Chaves distintas podem ser gravadas em paralelo; o histórico é
  serializado por lock

Limites explícitos:
- Não decide staleness
- Não conhece o grafo
"""

from __future__ import annotations

import json
import pickle
import shutil
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from targetflow.core.exceptions import CacheError, TargetFlowException, WorkerError
from targetflow.core.meta.hashing import NameEncoder

from .formats import FormatPlugin, atomic_path, get_format


_READ_ERRORS = (OSError, ValueError, EOFError, pickle.UnpicklingError, KeyError, AttributeError, ImportError)
_WRITE_ERRORS = (OSError, pickle.PicklingError, TypeError, ValueError, AttributeError)
_SERIALIZATION_ERRORS = (pickle.PicklingError, TypeError, ValueError, AttributeError)


class CacheStore:
    """Store canônica de valores, metadados e histórico de um workflow."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.encoder = NameEncoder()
        self._history_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    @property
    def values_dir(self) -> Path:
        return self.root / "values"

    @property
    def metadata_dir(self) -> Path:
        return self.root / "metadata"

    @property
    def previous_dir(self) -> Path:
        return self.root / "metadata_previous"

    @property
    def history_path(self) -> Path:
        return self.root / "progress" / "history.jsonl"

    @property
    def specifications_dir(self) -> Path:
        return self.root / "specifications"

    def value_path(self, key: str, fmt: Union[str, FormatPlugin]) -> Path:
        plugin = get_format(fmt) if isinstance(fmt, str) else fmt
        return self.values_dir / f"{self.encoder.encode(key)}{plugin.extension}"

    def _metadata_path(self, key: str, *, previous: bool = False) -> Path:
        base = self.previous_dir if previous else self.metadata_dir
        return base / f"{self.encoder.encode(key)}.json"

    # ------------------------------------------------------------------
    # JSON helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _write_json(path: Path, record: Any, *, what: str) -> None:
        try:
            payload = json.dumps(record, sort_keys=True, ensure_ascii=False, default=str)
            with atomic_path(path) as tmp:
                tmp.write_text(payload, encoding="utf-8")
        except _WRITE_ERRORS as exc:
            raise CacheError(
                message=f"Falha ao gravar {what}",
                details={"path": str(path), "exc_type": exc.__class__.__name__, "exc_message": str(exc)},
            ) from exc

    @staticmethod
    def _read_json(path: Path, *, what: str) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except _READ_ERRORS as exc:
            raise CacheError(
                message=f"Falha ao ler {what}",
                details={"path": str(path), "exc_type": exc.__class__.__name__, "exc_message": str(exc)},
            ) from exc

    # ------------------------------------------------------------------
    # Contrato de cache
    # ------------------------------------------------------------------
    def exists(self, key: str) -> bool:
        """True se há metadados commitados e o plugin confirma a `ref`."""
        meta = self.read_metadata(key)
        if meta is None or not meta.get("ref"):
            return False
        try:
            return bool(get_format(meta.get("format", "joblib")).exists(meta["ref"]))
        except _READ_ERRORS as exc:
            raise CacheError(
                message=f"Falha ao verificar valor de '{key}'",
                details={"key": key, "exc_type": exc.__class__.__name__},
            ) from exc

    def write_value(self, key: str, value: Any, fmt: str) -> str:
        """Grava só o valor (sem commit); retorna a `ref`."""
        plugin = get_format(fmt)
        try:
            return plugin.write(value, self.value_path(key, plugin))
        except TargetFlowException:
            raise
        except _SERIALIZATION_ERRORS as exc:
            raise WorkerError(
                message=f"Valor de '{key}' não é serializável no formato '{fmt}': {exc}",
                details={"key": key, "format": fmt, "exc_type": exc.__class__.__name__},
                hint="Escolha outro formato para o target ou retorne um valor serializável.",
            ) from exc
        except OSError as exc:
            raise CacheError(
                message=f"Falha ao gravar o valor de '{key}'",
                details={"key": key, "format": fmt, "exc_type": exc.__class__.__name__, "exc_message": str(exc)},
            ) from exc

    def store(self, key: str, value: Any, metadata: Dict[str, Any]) -> str:
        """
        Grava valor + metadados de forma atômica por chave.

        `metadata["format"]` escolhe o plugin; a `ref` devolvida pelo plugin
        é inserida nos metadados antes do commit.
        """
        fmt = metadata.get("format") or "joblib"
        ref = self.write_value(key, value, fmt)
        record = dict(metadata)
        record["ref"] = ref
        record["format"] = fmt
        self.write_metadata(key, record)
        return ref

    def retrieve(self, key: str) -> Any:
        meta = self.read_metadata(key)
        if meta is None or not meta.get("ref"):
            raise CacheError(message=f"Nenhum valor em cache para '{key}'", details={"key": key})
        return self.read_ref(meta["ref"], meta.get("format", "joblib"), key=key)

    def read_ref(self, ref: str, fmt: str, *, key: Optional[str] = None) -> Any:
        try:
            return get_format(fmt).read(ref)
        except TargetFlowException:
            raise
        except _READ_ERRORS as exc:
            raise CacheError(
                message=f"Falha ao ler o valor de '{key}'",
                details={"key": key, "ref": ref, "exc_type": exc.__class__.__name__, "exc_message": str(exc)},
            ) from exc

    def remove(self, key: str) -> None:
        """Remove metadados (primeiro) e o valor, se estiver sob `values/`."""
        meta = self.read_metadata(key)
        try:
            self._metadata_path(key).unlink(missing_ok=True)
            if meta and meta.get("ref"):
                ref = Path(meta["ref"])
                if ref.parent.resolve() == self.values_dir.resolve():
                    ref.unlink(missing_ok=True)
        except OSError as exc:
            raise CacheError(
                message=f"Falha ao remover '{key}' do cache",
                details={"key": key, "exc_message": str(exc)},
            ) from exc

    # ------------------------------------------------------------------
    # Metadados
    # ------------------------------------------------------------------
    def read_metadata(self, key: str, *, previous: bool = False) -> Optional[Dict[str, Any]]:
        return self._read_json(self._metadata_path(key, previous=previous), what=f"metadados de '{key}'")

    def write_metadata(self, key: str, record: Dict[str, Any]) -> None:
        self._write_json(self._metadata_path(key), record, what=f"metadados de '{key}'")

    def list_metadata(self, *, previous: bool = False, skip_corrupt: bool = False) -> Dict[str, Dict[str, Any]]:
        """
        Todos os metadados de uma geração, indexados pelo nome registrado.

        Com `skip_corrupt=True`, registros ilegíveis são ignorados (o target
        correspondente passa a ser tratado como nunca construído).
        """
        base = self.previous_dir if previous else self.metadata_dir
        if not base.is_dir():
            return {}
        out: Dict[str, Dict[str, Any]] = {}
        for path in sorted(base.glob("*.json")):
            try:
                record = self._read_json(path, what="metadados")
            except CacheError:
                if not skip_corrupt:
                    raise
                continue
            if record is not None:
                out[record.get("name") or self.encoder.decode(path.stem)] = record
        return out

    def snapshot_metadata(self) -> None:
        """Substitui `metadata_previous/` por uma cópia de `metadata/`."""
        try:
            staging = self.root / ".metadata_previous.tmp"
            if staging.exists():
                shutil.rmtree(staging)
            if self.metadata_dir.is_dir():
                shutil.copytree(self.metadata_dir, staging)
            else:
                staging.mkdir(parents=True)
            if self.previous_dir.exists():
                shutil.rmtree(self.previous_dir)
            staging.replace(self.previous_dir)
        except OSError as exc:
            raise CacheError(
                message="Falha ao criar snapshot de metadados",
                details={"root": str(self.root), "exc_message": str(exc)},
            ) from exc

    # ------------------------------------------------------------------
    # Histórico (append-only)
    # ------------------------------------------------------------------
    def append_history(self, record: Dict[str, Any]) -> None:
        line = json.dumps(record, sort_keys=True, ensure_ascii=False, default=str)
        with self._history_lock:
            try:
                self.history_path.parent.mkdir(parents=True, exist_ok=True)
                with self.history_path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as exc:
                raise CacheError(
                    message="Falha ao gravar histórico de progresso",
                    details={"path": str(self.history_path), "exc_message": str(exc)},
                ) from exc

    def read_history_records(self) -> List[Dict[str, Any]]:
        if not self.history_path.exists():
            return []
        records: List[Dict[str, Any]] = []
        try:
            with self.history_path.open("r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        records.append(json.loads(line))
        except _READ_ERRORS as exc:
            raise CacheError(
                message="Falha ao ler histórico de progresso",
                details={"path": str(self.history_path), "exc_message": str(exc)},
            ) from exc
        return records

    # ------------------------------------------------------------------
    # Especificações memoizadas
    # ------------------------------------------------------------------
    def read_specification(self, command_hash: str) -> Optional[Dict[str, Any]]:
        try:
            return self._read_json(self.specifications_dir / f"{command_hash}.json", what="especificação")
        except CacheError:
            return None

    def write_specification(self, command_hash: str, record: Dict[str, Any]) -> None:
        self._write_json(self.specifications_dir / f"{command_hash}.json", record, what="especificação")

    def __repr__(self) -> str:
        return f"CacheStore({str(self.root)!r})"


def read_target(name: str, store: Union[CacheStore, str, Path, None] = None) -> Any:
    """
    Lê o valor em cache de um target (ou sub-target) fora de um build.

    Targets dinâmicos não têm valor próprio: o resultado é a lista dos
    valores dos branches, na ordem registrada.
    """
    if store is None:
        store = CacheStore(".targetflow")
    elif not isinstance(store, CacheStore):
        store = CacheStore(store)
    meta = store.read_metadata(name)
    if meta is not None and meta.get("kind") == "dynamic":
        return [store.retrieve(child) for child in meta.get("children", [])]
    return store.retrieve(name)


load_target = read_target


__all__ = ["CacheStore", "read_target", "load_target"]
