"""
Hashing canônico do TargetFlow.

Política (v1):
    - Estruturas (fingerprints, metadados) → JSON canônico + SHA-256
    - Valores de targets → `joblib.hash` (suporta numpy/pandas)
    - Arquivos → SHA-256 do conteúdo; diretórios → hash sobre o conteúdo
      ordenado; ausência de arquivo é um estado hashável ("missing")

`FileStamp` guarda hash + mtime + size. mtime/size evitam re-hash de
arquivos intactos; só o trigger `file` também compara o mtime.
"""

from __future__ import annotations

import hashlib
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import joblib

MISSING_FILE = "missing"
_CHUNK = 1 << 20


def canonical_hash(obj: Any) -> str:
    """SHA-256 do JSON canônico (chaves ordenadas, separadores compactos)."""
    payload = json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_value(value: Any) -> str:
    """Hash de conteúdo de um valor arbitrário (joblib.hash)."""
    return joblib.hash(value)


def hash_file(path: Union[str, Path]) -> str:
    p = Path(path)
    if p.is_dir():
        h = hashlib.sha256()
        for child in sorted(p.rglob("*")):
            if child.is_file():
                h.update(child.relative_to(p).as_posix().encode("utf-8"))
                h.update(hash_file(child).encode("ascii"))
        return h.hexdigest()
    if not p.exists():
        return MISSING_FILE
    h = hashlib.sha256()
    with p.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


@dataclass(frozen=True)
class FileStamp:
    """Estado observado de um arquivo declarado."""

    hash: str
    mtime: Optional[float] = None
    size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"hash": self.hash, "mtime": self.mtime, "size": self.size}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileStamp":
        return cls(hash=data["hash"], mtime=data.get("mtime"), size=data.get("size"))


def stamp_file(path: Union[str, Path], previous: Optional[FileStamp] = None) -> FileStamp:
    """
    Observa um arquivo, reaproveitando o hash anterior quando mtime e size
    não mudaram. Diretórios são sempre re-hasheados.
    """
    p = Path(path)
    if not p.exists():
        return FileStamp(hash=MISSING_FILE)
    if p.is_dir():
        return FileStamp(hash=hash_file(p))
    st = p.stat()
    if (
        previous is not None
        and previous.hash != MISSING_FILE
        and previous.mtime == st.st_mtime
        and previous.size == st.st_size
    ):
        return previous
    return FileStamp(hash=hash_file(p), mtime=st.st_mtime, size=st.st_size)


class NameEncoder:
    """
    Tabela memoizada nome ↔ chave de armazenamento.

    Nomes de targets já são identificadores seguros e são usados como
    estão; caminhos e nomes com caracteres especiais viram uma chave
    estável `p-<sha256[:16]>`. A decodificação consulta a tabela.
    """

    def __init__(self) -> None:
        self._encode: Dict[str, str] = {}
        self._decode: Dict[str, str] = {}
        self._lock = threading.Lock()

    def encode(self, name: str) -> str:
        with self._lock:
            key = self._encode.get(name)
            if key is None:
                if name.isidentifier():
                    key = name
                else:
                    key = "p-" + hash_text(name)[:16]
                self._encode[name] = key
                self._decode[key] = name
            return key

    def decode(self, key: str) -> str:
        with self._lock:
            return self._decode.get(key, key)

    def __len__(self) -> int:
        return len(self._encode)


def resolve_seed(name: str, global_seed: int, explicit: Optional[int] = None) -> int:
    """Seed do target: explícita, ou derivada de (seed global, nome)."""
    if explicit is not None:
        return int(explicit)
    digest = hashlib.sha256(f"{global_seed}:{name}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


__all__ = [
    "MISSING_FILE",
    "FileStamp",
    "NameEncoder",
    "canonical_hash",
    "hash_file",
    "hash_text",
    "hash_value",
    "resolve_seed",
    "stamp_file",
]
