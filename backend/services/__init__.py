from importlib import import_module

__all__ = [
    "endpoint_rotation",
    "EndpointRotationManager",
    "metadata_resolver",
    "MetadataResolver",
    "trade_fetch_cache",
    "FetchCache",
    "trade_store",
    "SqlTradeStore",
    "trade_history_service",
    "TradeHistoryService",
]

_LAZY_EXPORTS = {
    "endpoint_rotation": ("services.endpoint_rotation", "endpoint_rotation"),
    "EndpointRotationManager": ("services.endpoint_rotation", "EndpointRotationManager"),
    "metadata_resolver": ("services.token_metadata", "metadata_resolver"),
    "MetadataResolver": ("services.token_metadata", "MetadataResolver"),
    "trade_fetch_cache": ("services.fetch_cache", "trade_fetch_cache"),
    "FetchCache": ("services.fetch_cache", "FetchCache"),
    "trade_store": ("services.trade_store", "trade_store"),
    "SqlTradeStore": ("services.trade_store", "SqlTradeStore"),
    "trade_history_service": ("services.trade_history_sync", "trade_history_service"),
    "TradeHistoryService": ("services.trade_history_sync", "TradeHistoryService"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
