# src/targetflow/core/__init__.py
"""
Core do TargetFlow.

Camadas, de baixo para cima:
    - config       → carregamento, merge, hashing e opções de build
    - plan         → targets, triggers, padrões dinâmicos e sentinelas
    - spec         → extração estática de dependências
    - graph        → DAG de dependências e detecção de ciclos
    - meta         → hashing, metadados e decisões de staleness
    - cache        → store de valores, metadados e histórico
    - scope        → camadas de escopo e estratégia de memória
    - engine       → scheduler, executores e pontos de entrada
    - traceability → histórico append-only de eventos

Limites explícitos:
    - Não renderiza relatórios
    - Não oferece CLI
"""
