from .routes_trade_history import router

__all__ = ["router"]
