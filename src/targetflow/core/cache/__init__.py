"""
Cache endereçado por nome: store de valores/metadados/histórico e plugins de formato.
"""

from .formats import (
    FileFormat,
    FormatPlugin,
    JoblibFormat,
    JsonFormat,
    atomic_path,
    available_formats,
    get_format,
    register_format,
)
from .store import CacheStore, load_target, read_target

__all__ = [
    "FileFormat",
    "FormatPlugin",
    "JoblibFormat",
    "JsonFormat",
    "atomic_path",
    "available_formats",
    "get_format",
    "register_format",
    "CacheStore",
    "load_target",
    "read_target",
]
