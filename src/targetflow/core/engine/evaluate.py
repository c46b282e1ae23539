"""
Avaliação de comandos.

Um comando é uma expressão Python, ou um bloco de instruções cuja
última instrução é uma expressão: o valor do target é o valor dessa
expressão (ou None quando o bloco termina em instrução).

A compilação é memoizada pelo texto do comando.
"""

from __future__ import annotations

import ast
import threading
from types import CodeType
from typing import Any, Dict, Optional, Tuple

from targetflow.core.exceptions import SpecificationError


_COMPILED: Dict[str, Tuple[Optional[CodeType], Optional[CodeType]]] = {}
_LOCK = threading.Lock()


def compile_command(
    command: str, *, filename: str = "<command>", memo: bool = True
) -> Tuple[Optional[CodeType], Optional[CodeType]]:
    """
    Compila um comando em (bloco, expressão final).

    `memo=False` não toca a tabela compartilhada (usado em processos
    filhos criados por fork, onde o lock pode ter sido herdado fechado).
    """
    if memo:
        with _LOCK:
            cached = _COMPILED.get(command)
        if cached is not None:
            return cached

    try:
        tree = ast.parse(command, filename=filename, mode="exec")
    except SyntaxError as exc:
        raise SpecificationError(
            message=f"Comando não compila: {exc.msg}",
            details={"lineno": exc.lineno, "offset": exc.offset},
        ) from None

    body = tree.body
    expr_code: Optional[CodeType] = None
    if body and isinstance(body[-1], ast.Expr):
        expression = ast.Expression(body=body[-1].value)
        ast.copy_location(expression, body[-1])
        expr_code = compile(expression, filename, "eval")
        body = body[:-1]

    block_code: Optional[CodeType] = None
    if body:
        block_code = compile(ast.Module(body=body, type_ignores=[]), filename, "exec")

    compiled = (block_code, expr_code)
    if memo:
        with _LOCK:
            _COMPILED[command] = compiled
    return compiled


def evaluate_command(command: str, namespace: Dict[str, Any], *, memo: bool = True) -> Any:
    """Executa o comando em `namespace` (mutado) e devolve o valor final."""
    block_code, expr_code = compile_command(command, memo=memo)
    if block_code is not None:
        exec(block_code, namespace)
    if expr_code is not None:
        return eval(expr_code, namespace)
    return None


def evaluate_expression(text: str, namespace: Dict[str, Any]) -> Any:
    """Avalia a expressão de um trigger sobre uma cópia do namespace."""
    return evaluate_command(text, dict(namespace))


__all__ = ["compile_command", "evaluate_command", "evaluate_expression"]
