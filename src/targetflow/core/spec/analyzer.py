# src/targetflow/core/spec/analyzer.py
"""
Análise estática de comandos e de funções importadas.

Este módulo transforma o texto de um comando em uma `CommandAnalysis`:
o conjunto de nomes livres referenciados, os arquivos declarados via
sentinelas e os relatórios de entrada. A análise é uma função pura do
texto e é memoizada pelo hash desse texto.

Também analisa objetos do ambiente do usuário ("imports"): para
funções e classes, descobre os nomes globais que o corpo referencia,
permitindo dependências transitivas através de funções chamadas.

Decisões arquiteturais:
    - O parser é plugável (`CommandParser`); o padrão usa `ast` da stdlib
    - Nomes ligados dentro do próprio comando (atribuições, compreensões,
      lambdas, walrus) não são dependências
    - Argumentos de `file_in`/`file_out`/`report_in` devem ser literais
    - Nada dentro de `ignore(...)` é considerado dependência

Invariantes:
    - O mesmo texto sempre produz a mesma análise
    - A análise não executa código do usuário

Limites explícitos:
    - Não resolve nomes contra targets/imports (isso é do builder)
    - Acesso dinâmico (getattr, eval, globals()) não é detectado
"""

from __future__ import annotations

import ast
import hashlib
import inspect
import pickle
import re
import textwrap
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set, Tuple, runtime_checkable

import joblib

from targetflow.core.exceptions import SpecificationError
from targetflow.core.plan.sentinels import SENTINEL_NAMES


_FILE_SENTINELS = {"file_in": "files_in", "file_out": "files_out", "report_in": "reports"}


def hash_command(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CommandAnalysis:
    """Fatos estáticos de um comando, independentes do plano."""

    command_hash: str
    names: Tuple[str, ...] = ()
    files_in: Tuple[str, ...] = ()
    files_out: Tuple[str, ...] = ()
    reports: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_hash": self.command_hash,
            "names": list(self.names),
            "files_in": list(self.files_in),
            "files_out": list(self.files_out),
            "reports": list(self.reports),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommandAnalysis":
        return cls(
            command_hash=data["command_hash"],
            names=tuple(data.get("names", ())),
            files_in=tuple(data.get("files_in", ())),
            files_out=tuple(data.get("files_out", ())),
            reports=tuple(data.get("reports", ())),
        )


@dataclass(frozen=True)
class ImportAnalysis:
    """Nomes globais referenciados por um objeto importado e seu digest."""

    names: Tuple[str, ...] = ()
    digest: str = ""


@runtime_checkable
class CommandParser(Protocol):
    """Contrato de parser plugável: texto do comando → CommandAnalysis."""

    def parse(self, command: str) -> CommandAnalysis:
        ...


# ---------------------------------------------------------------------------
# Visitor de nomes livres
# ---------------------------------------------------------------------------

class _FreeNames(ast.NodeVisitor):
    """Coleta nomes lidos antes de serem ligados no escopo corrente."""

    def __init__(self) -> None:
        self.scopes: List[Set[str]] = [set()]
        self.free: List[str] = []
        self._seen: Set[str] = set()
        self.files: Dict[str, List[str]] = {"files_in": [], "files_out": [], "reports": []}

    # -- escopo -----------------------------------------------------------
    def _bound(self, name: str) -> bool:
        return any(name in scope for scope in self.scopes)

    def _load(self, name: str) -> None:
        if self._bound(name) or name in self._seen or name in SENTINEL_NAMES:
            return
        self._seen.add(name)
        self.free.append(name)

    def _bind(self, name: str) -> None:
        self.scopes[-1].add(name)

    def _visit_all(self, nodes: Sequence[Optional[ast.AST]]) -> None:
        for node in nodes:
            if node is not None:
                self.visit(node)

    # -- nomes ------------------------------------------------------------
    def visit_Name(self, node: ast.Name) -> None:
        if isinstance(node.ctx, ast.Load):
            self._load(node.id)
        else:
            self._bind(node.id)

    def visit_Assign(self, node: ast.Assign) -> None:
        self.visit(node.value)
        self._visit_all(node.targets)

    def visit_AugAssign(self, node: ast.AugAssign) -> None:
        if isinstance(node.target, ast.Name):
            self._load(node.target.id)
        self.visit(node.value)
        self.visit(node.target)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        if node.value is not None:
            self.visit(node.value)
        self.visit(node.target)

    def visit_NamedExpr(self, node: ast.NamedExpr) -> None:
        self.visit(node.value)
        self.visit(node.target)

    def visit_For(self, node: ast.For) -> None:
        self.visit(node.iter)
        self.visit(node.target)
        self._visit_all(node.body)
        self._visit_all(node.orelse)

    visit_AsyncFor = visit_For

    def visit_withitem(self, node: ast.withitem) -> None:
        self.visit(node.context_expr)
        if node.optional_vars is not None:
            self.visit(node.optional_vars)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.type is not None:
            self.visit(node.type)
        if node.name:
            self._bind(node.name)
        self._visit_all(node.body)

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self._bind(alias.asname or alias.name.split(".")[0])

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        for alias in node.names:
            self._bind(alias.asname or alias.name)

    def visit_Global(self, node: ast.Global) -> None:
        return None

    visit_Nonlocal = visit_Global

    # -- escopos aninhados ------------------------------------------------
    def _visit_arguments(self, args: ast.arguments) -> Set[str]:
        self._visit_all(list(args.defaults) + [d for d in args.kw_defaults if d is not None])
        params = list(getattr(args, "posonlyargs", [])) + list(args.args) + list(args.kwonlyargs)
        names = {a.arg for a in params}
        if args.vararg is not None:
            names.add(args.vararg.arg)
        if args.kwarg is not None:
            names.add(args.kwarg.arg)
        return names

    def visit_Lambda(self, node: ast.Lambda) -> None:
        params = self._visit_arguments(node.args)
        self.scopes.append(params)
        self.visit(node.body)
        self.scopes.pop()

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._visit_all(node.decorator_list)
        self._bind(node.name)
        params = self._visit_arguments(node.args)
        local = set(params)
        for child in node.body:
            for sub in ast.walk(child):
                if isinstance(sub, ast.Name) and not isinstance(sub.ctx, ast.Load):
                    local.add(sub.id)
                elif isinstance(sub, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
                    local.add(sub.name)
        self.scopes.append(local)
        self._visit_all(node.body)
        self.scopes.pop()

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self._visit_all(node.decorator_list)
        self._visit_all(node.bases)
        self._visit_all([k.value for k in node.keywords])
        self._bind(node.name)
        self.scopes.append(set())
        self._visit_all(node.body)
        self.scopes.pop()

    def _visit_comprehension(self, node: ast.AST, elements: Sequence[ast.AST]) -> None:
        self.scopes.append(set())
        for gen in node.generators:  # type: ignore[attr-defined]
            self.visit(gen.iter)
            self.visit(gen.target)
            self._visit_all(gen.ifs)
        self._visit_all(elements)
        self.scopes.pop()

    def visit_ListComp(self, node: ast.ListComp) -> None:
        self._visit_comprehension(node, [node.elt])

    visit_SetComp = visit_ListComp
    visit_GeneratorExp = visit_ListComp

    def visit_DictComp(self, node: ast.DictComp) -> None:
        self._visit_comprehension(node, [node.key, node.value])

    # -- sentinelas -------------------------------------------------------
    def visit_Call(self, node: ast.Call) -> None:
        sentinel = _sentinel_name(node.func)
        if sentinel == "ignore":
            return
        if sentinel in _FILE_SENTINELS:
            self.files[_FILE_SENTINELS[sentinel]].extend(_literal_paths(sentinel, node))
            return
        self.generic_visit(node)


def _sentinel_name(func: ast.AST) -> Optional[str]:
    if isinstance(func, ast.Name) and func.id in SENTINEL_NAMES:
        return func.id
    if isinstance(func, ast.Attribute) and func.attr in SENTINEL_NAMES:
        return func.attr
    return None


def _literal_paths(sentinel: str, node: ast.Call) -> List[str]:
    if node.keywords:
        raise SpecificationError(
            message=f"{sentinel}() não aceita argumentos nomeados",
            details={"sentinel": sentinel, "lineno": node.lineno},
        )
    paths: List[str] = []
    for arg in node.args:
        items = arg.elts if isinstance(arg, (ast.List, ast.Tuple)) else [arg]
        for item in items:
            if not (isinstance(item, ast.Constant) and isinstance(item.value, str)):
                raise SpecificationError(
                    message=f"{sentinel}() exige caminhos literais (string constante)",
                    details={"sentinel": sentinel, "lineno": node.lineno},
                    hint="Caminhos de arquivos são resolvidos antes da execução; use strings literais.",
                )
            paths.append(item.value)
    return paths


def _parse(text: str, *, what: str) -> ast.Module:
    try:
        return ast.parse(text, mode="exec")
    except SyntaxError as exc:
        raise SpecificationError(
            message=f"Não foi possível analisar {what}: {exc.msg}",
            details={"lineno": exc.lineno, "offset": exc.offset, "text": (exc.text or "").strip()},
        ) from None


class PythonCommandParser:
    """Parser padrão: comandos são código Python (expressão ou bloco)."""

    def parse(self, command: str) -> CommandAnalysis:
        tree = _parse(command, what="o comando")
        visitor = _FreeNames()
        visitor.visit(tree)
        return CommandAnalysis(
            command_hash=hash_command(command),
            names=tuple(visitor.free),
            files_in=tuple(dict.fromkeys(visitor.files["files_in"])),
            files_out=tuple(dict.fromkeys(visitor.files["files_out"])),
            reports=tuple(dict.fromkeys(visitor.files["reports"])),
        )


_DEFAULT_PARSER = PythonCommandParser()
_ANALYSIS_MEMO: Dict[str, CommandAnalysis] = {}
_MEMO_LOCK = threading.Lock()


def analyze_command(command: str, parser: Optional[CommandParser] = None) -> CommandAnalysis:
    """Analisa um comando, memoizando pelo hash do texto (parser padrão)."""
    if parser is not None and parser is not _DEFAULT_PARSER:
        return parser.parse(command)
    key = hash_command(command)
    with _MEMO_LOCK:
        cached = _ANALYSIS_MEMO.get(key)
    if cached is not None:
        return cached
    result = _DEFAULT_PARSER.parse(command)
    with _MEMO_LOCK:
        _ANALYSIS_MEMO[key] = result
    return result


# ---------------------------------------------------------------------------
# Imports (objetos do ambiente do usuário)
# ---------------------------------------------------------------------------

def _code_names(code: Any) -> List[str]:
    names: List[str] = list(code.co_names)
    for const in code.co_consts:
        if inspect.iscode(const):
            names.extend(_code_names(const))
    return names


def _code_digest(code: Any) -> str:
    h = hashlib.sha256()
    h.update(code.co_code)
    for const in code.co_consts:
        if inspect.iscode(const):
            h.update(_code_digest(const).encode("ascii"))
        else:
            h.update(repr(const).encode("utf-8"))
    h.update(repr(code.co_names).encode("utf-8"))
    return h.hexdigest()


def _definition_node(tree: ast.Module) -> Optional[ast.AST]:
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            return node
    return None


def value_digest(obj: Any) -> str:
    """Digest de um objeto não-função (joblib.hash; repr como último recurso)."""
    try:
        return joblib.hash(obj)
    except (pickle.PicklingError, TypeError, AttributeError, ValueError):
        return hashlib.sha256(repr(obj).encode("utf-8")).hexdigest()


def analyze_function(obj: Any) -> ImportAnalysis:
    """
    Analisa um objeto do ambiente do usuário.

    - funções/classes: nomes livres do corpo (via fonte; fallback no code object)
      e digest da árvore sintática (comentários e formatação não contam)
    - módulos: sem dependências; digest = nome + versão
    - demais objetos: sem dependências; digest do valor
    """
    if inspect.ismodule(obj):
        ident = f"{obj.__name__}:{getattr(obj, '__version__', '')}"
        return ImportAnalysis(names=(), digest=hashlib.sha256(ident.encode("utf-8")).hexdigest())

    if inspect.isfunction(obj) or inspect.ismethod(obj) or inspect.isclass(obj):
        target = inspect.unwrap(obj) if not inspect.isclass(obj) else obj
        node = None
        try:
            source = textwrap.dedent(inspect.getsource(target))
            node = _definition_node(ast.parse(source))
        except (OSError, TypeError, SyntaxError):
            node = None

        if node is not None:
            visitor = _FreeNames()
            visitor.visit(node)
            names = [n for n in visitor.free if n != getattr(target, "__name__", None)]
            digest = hashlib.sha256(ast.dump(node).encode("utf-8")).hexdigest()
            return ImportAnalysis(names=tuple(names), digest=digest)

        code = getattr(target, "__code__", None)
        if code is not None:
            names = list(dict.fromkeys(_code_names(code)))
            return ImportAnalysis(names=tuple(names), digest=_code_digest(code))

        ident = f"{getattr(target, '__module__', '')}.{getattr(target, '__qualname__', repr(target))}"
        return ImportAnalysis(names=(), digest=hashlib.sha256(ident.encode("utf-8")).hexdigest())

    if inspect.isbuiltin(obj):
        ident = f"{getattr(obj, '__module__', '')}.{getattr(obj, '__qualname__', repr(obj))}"
        return ImportAnalysis(names=(), digest=hashlib.sha256(ident.encode("utf-8")).hexdigest())

    return ImportAnalysis(names=(), digest=value_digest(obj))


# ---------------------------------------------------------------------------
# Relatórios
# ---------------------------------------------------------------------------

_REPORT_REF = re.compile(r"\b(?:read_target|load_target)\(\s*[\"']?([A-Za-z_][A-Za-z0-9_]*)[\"']?")


def scan_report(path: str) -> Tuple[str, ...]:
    """Nomes referenciados por read_target/load_target dentro de um relatório."""
    p = Path(path)
    if not p.is_file():
        return ()
    text = p.read_text(encoding="utf-8", errors="replace")
    return tuple(dict.fromkeys(_REPORT_REF.findall(text)))


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
]
