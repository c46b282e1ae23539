"""Plugins de formato de armazenamento de valores (v1).

Um formato sabe gravar um valor em um destino e devolver uma referência
(`ref`), ler o valor de volta a partir da `ref` e dizer se a `ref` ainda
existe. O core nunca inspeciona a `ref`: apenas a persiste nos metadados.

Formatos embutidos:
- `joblib` (default): qualquer objeto picklável; numpy/pandas eficientes
- `json`: valores JSON-serializáveis (legível por leitores externos)
- `file`: o valor é um caminho (ou lista de caminhos) produzido pelo
  comando; o conteúdo fica onde o usuário o gravou e é rastreado por hash

Decisões (v1):
- Escrita atômica: arquivo temporário no mesmo diretório + `os.replace`
- Dispatch por tabela (`register_format` / `get_format`)
- `ref` é sempre uma string

Limites explícitos:
- Formatos colunares/HDF5 não são embutidos; basta registrar um plugin
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Protocol, Union, runtime_checkable

import joblib

from targetflow.core.exceptions import BuildError, PlanError
from targetflow.core.meta.hashing import MISSING_FILE, hash_file, hash_text, hash_value


@runtime_checkable
class FormatPlugin(Protocol):
    """Contrato mínimo de um formato de armazenamento."""

    name: str
    extension: str

    def write(self, value: Any, destination: Path) -> str:
        ...

    def read(self, ref: str) -> Any:
        ...

    def exists(self, ref: str) -> bool:
        ...

    def value_hash(self, value: Any) -> str:
        ...


@contextlib.contextmanager
def atomic_path(destination: Union[str, Path]) -> Iterator[Path]:
    """Entrega um caminho temporário e o promove a `destination` só em caso de sucesso."""
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".tmp", dir=str(destination.parent))
    os.close(fd)
    tmp_path = Path(tmp)
    try:
        yield tmp_path
        os.replace(tmp_path, destination)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class JoblibFormat:
    name = "joblib"
    extension = ".joblib"

    def write(self, value: Any, destination: Path) -> str:
        with atomic_path(destination) as tmp:
            joblib.dump(value, tmp)
        return str(destination)

    def read(self, ref: str) -> Any:
        return joblib.load(ref)

    def exists(self, ref: str) -> bool:
        return Path(ref).is_file()

    def value_hash(self, value: Any) -> str:
        return hash_value(value)


class JsonFormat:
    name = "json"
    extension = ".json"

    def write(self, value: Any, destination: Path) -> str:
        payload = json.dumps(value, sort_keys=True, ensure_ascii=False)
        with atomic_path(destination) as tmp:
            tmp.write_text(payload, encoding="utf-8")
        return str(destination)

    def read(self, ref: str) -> Any:
        return json.loads(Path(ref).read_text(encoding="utf-8"))

    def exists(self, ref: str) -> bool:
        return Path(ref).is_file()

    def value_hash(self, value: Any) -> str:
        return hash_text(json.dumps(value, sort_keys=True, ensure_ascii=False))


class FileFormat:
    """O valor é o(s) caminho(s) de arquivo(s) que o comando produziu."""

    name = "file"
    extension = ".paths.json"

    @staticmethod
    def _paths(value: Any) -> List[str]:
        if isinstance(value, (str, os.PathLike)):
            return [os.fspath(value)]
        if isinstance(value, (list, tuple)) and all(isinstance(v, (str, os.PathLike)) for v in value):
            return [os.fspath(v) for v in value]
        raise BuildError(
            message="Formato 'file' exige um caminho ou uma lista de caminhos",
            details={"received": type(value).__name__},
        )

    def write(self, value: Any, destination: Path) -> str:
        paths = self._paths(value)
        missing = [p for p in paths if not Path(p).exists()]
        if missing:
            raise BuildError(
                message="Formato 'file': arquivo(s) não encontrado(s) após o build",
                details={"missing": missing},
            )
        record = {"paths": paths, "single": isinstance(value, (str, os.PathLike))}
        with atomic_path(destination) as tmp:
            tmp.write_text(json.dumps(record), encoding="utf-8")
        return str(destination)

    def read(self, ref: str) -> Any:
        record = json.loads(Path(ref).read_text(encoding="utf-8"))
        return record["paths"][0] if record.get("single") else list(record["paths"])

    def exists(self, ref: str) -> bool:
        if not Path(ref).is_file():
            return False
        record = json.loads(Path(ref).read_text(encoding="utf-8"))
        return all(Path(p).exists() for p in record["paths"])

    def value_hash(self, value: Any) -> str:
        hashes = [hash_file(p) for p in self._paths(value)]
        if MISSING_FILE in hashes:
            return MISSING_FILE
        return hash_text(":".join(hashes))


_FORMATS: Dict[str, FormatPlugin] = {}
_FORMATS_LOCK = threading.Lock()


def register_format(plugin: FormatPlugin, *, replace: bool = False) -> None:
    if not isinstance(plugin, FormatPlugin):
        raise TypeError("plugin não satisfaz o contrato FormatPlugin (name, extension, write, read, exists, value_hash)")
    with _FORMATS_LOCK:
        if plugin.name in _FORMATS and not replace:
            raise ValueError(f"Formato já registrado: {plugin.name}")
        _FORMATS[plugin.name] = plugin


def get_format(name: str) -> FormatPlugin:
    with _FORMATS_LOCK:
        plugin = _FORMATS.get(name)
    if plugin is None:
        raise PlanError(
            message=f"Formato desconhecido: {name}",
            details={"format": name, "available": available_formats()},
            hint="Registre o formato com register_format() antes do build.",
        )
    return plugin


def available_formats() -> List[str]:
    with _FORMATS_LOCK:
        return sorted(_FORMATS)


for _plugin in (JoblibFormat(), JsonFormat(), FileFormat()):
    register_format(_plugin)


__all__ = [
    "FileFormat",
    "FormatPlugin",
    "JoblibFormat",
    "JsonFormat",
    "atomic_path",
    "available_formats",
    "get_format",
    "register_format",
]
