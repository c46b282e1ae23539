"""
Gerenciador de escopo em camadas (base → static → aggregate → branch).
"""

from .layers import LAYER_ORDER, ScopeError, ScopeLayer, ScopeManager

__all__ = ["LAYER_ORDER", "ScopeError", "ScopeLayer", "ScopeManager"]
