"""
Specification Builder: extração estática de dependências por target.
"""

from .analyzer import (
    CommandAnalysis,
    CommandParser,
    ImportAnalysis,
    PythonCommandParser,
    analyze_command,
    analyze_function,
    hash_command,
    scan_report,
    value_digest,
)
from .builder import ImportSpecification, Specification, SpecificationBuilder

__all__ = [
    "CommandAnalysis",
    "CommandParser",
    "ImportAnalysis",
    "PythonCommandParser",
    "analyze_command",
    "analyze_function",
    "hash_command",
    "scan_report",
    "value_digest",
    "ImportSpecification",
    "Specification",
    "SpecificationBuilder",
]
