"""
Metadados de build e o MetadataStore de duas gerações.

Gerações:
    - previous: estado commitado pela última run (carregado em `begin_run`)
    - current: registros produzidos nesta run (write-through para o store)

O MetadataStore também memoiza, por run, os carimbos de arquivos
declarados e os digests de imports: cada arquivo/import é observado no
máximo uma vez por run, mesmo quando muitos targets o referenciam.

Invariantes:
    - Apenas o target que foi construído grava seus metadados
      (um escritor por target)
    - Uma falha preserva `ref`/`value_hash` do último build bem-sucedido
      (a entrada de cache continua existindo) e marca `error`
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from .hashing import FileStamp, stamp_file


@dataclass(frozen=True)
class Metadata:
    """Registro persistido por target (ou sub-target)."""

    name: str
    kind: str = "target"
    parent: Optional[str] = None
    command_hash: Optional[str] = None
    fingerprint: Optional[str] = None
    depends: Dict[str, str] = field(default_factory=dict)
    files_in: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    files_out: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    value_hash: Optional[str] = None
    format: str = "joblib"
    ref: Optional[str] = None
    seed: Optional[int] = None
    trigger_value: Optional[str] = None
    children: List[str] = field(default_factory=list)
    built_at: Optional[str] = None
    elapsed: Optional[float] = None
    error: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and self.value_hash is not None

    def file_stamps(self, which: str = "files_in") -> Dict[str, FileStamp]:
        records = self.files_in if which == "files_in" else self.files_out
        return {path: FileStamp.from_dict(d) for path, d in records.items()}

    def failed(self, error: Dict[str, Any]) -> "Metadata":
        """Cópia marcando falha; preserva a referência ao último valor bom."""
        return replace(self, error=dict(error), fingerprint=None)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Metadata":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


class MetadataStore:
    """Metadados das gerações previous/current de uma run."""

    def __init__(self, store: Any, *, persist: bool = True):
        self.store = store
        self.persist = persist
        self._previous: Dict[str, Metadata] = {}
        self._current: Dict[str, Metadata] = {}
        self._known_stamps: Dict[str, FileStamp] = {}
        self._file_memo: Dict[str, FileStamp] = {}
        self._import_memo: Dict[str, str] = {}
        self._lock = threading.RLock()

    def begin_run(self) -> None:
        """
        Carrega a geração anterior e, se persistente, a copia para
        `metadata_previous/`. Registros ilegíveis contam como ausentes.
        """
        records = self.store.list_metadata(skip_corrupt=True)
        with self._lock:
            self._previous = {name: Metadata.from_dict(r) for name, r in records.items()}
            self._current = {}
            self._file_memo = {}
            self._import_memo = {}
            self._known_stamps = {}
            for meta in self._previous.values():
                for path, stamp in list(meta.files_in.items()) + list(meta.files_out.items()):
                    self._known_stamps[path] = FileStamp.from_dict(stamp)
        if self.persist:
            self.store.snapshot_metadata()

    # ------------------------------------------------------------------
    # Gerações
    # ------------------------------------------------------------------
    def previous(self, name: str) -> Optional[Metadata]:
        with self._lock:
            return self._previous.get(name)

    def current(self, name: str) -> Optional[Metadata]:
        with self._lock:
            return self._current.get(name)

    def latest(self, name: str) -> Optional[Metadata]:
        with self._lock:
            return self._current.get(name) or self._previous.get(name)

    def record(self, meta: Metadata, *, value: Any = None, has_value: bool = False) -> None:
        """
        Registra metadados na geração corrente.

        Com `has_value=True` o valor é gravado junto (store atômico);
        caso contrário apenas os metadados são commitados.
        """
        if self.persist:
            if has_value:
                ref = self.store.store(meta.name, value, meta.to_dict())
                meta = replace(meta, ref=ref)
            else:
                self.store.write_metadata(meta.name, meta.to_dict())
        with self._lock:
            self._current[meta.name] = meta

    def value_hash(self, name: str) -> Optional[str]:
        meta = self.latest(name)
        return meta.value_hash if meta is not None else None

    def names(self) -> List[str]:
        with self._lock:
            return sorted(set(self._previous) | set(self._current))

    def forget(self, name: str) -> None:
        """Remove um sub-target órfão das duas gerações e do store."""
        with self._lock:
            self._previous.pop(name, None)
            self._current.pop(name, None)
        if self.persist:
            self.store.remove(name)

    # ------------------------------------------------------------------
    # Memos por run
    # ------------------------------------------------------------------
    def file_stamp(self, path: str) -> FileStamp:
        with self._lock:
            cached = self._file_memo.get(path)
            known = self._known_stamps.get(path)
        if cached is not None:
            return cached
        stamp = stamp_file(path, known)
        with self._lock:
            self._file_memo[path] = stamp
            self._known_stamps[path] = stamp
        return stamp

    def refresh_file(self, path: str) -> FileStamp:
        """Descarta o memo de um arquivo (ex.: saída recém-gravada) e o observa de novo."""
        with self._lock:
            self._file_memo.pop(path, None)
        return self.file_stamp(path)

    def import_hash(self, name: str, compute: Callable[[], str]) -> str:
        with self._lock:
            cached = self._import_memo.get(name)
        if cached is not None:
            return cached
        digest = compute()
        with self._lock:
            self._import_memo[name] = digest
        return digest


__all__ = ["Metadata", "MetadataStore"]
