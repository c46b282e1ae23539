"""
Metadados, hashing e decisões de staleness.
"""

from .hashing import (
    MISSING_FILE,
    FileStamp,
    NameEncoder,
    canonical_hash,
    hash_file,
    hash_text,
    hash_value,
    resolve_seed,
    stamp_file,
)
from .metadata import Metadata, MetadataStore
from .triggers import Decision, TriggerInputs, compute_fingerprint, decide, normalize_command

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
    "Metadata",
    "MetadataStore",
    "Decision",
    "TriggerInputs",
    "compute_fingerprint",
    "decide",
    "normalize_command",
]
