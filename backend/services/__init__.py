from importlib import import_module

__all__ = [
    "DlmmHttpClient",
    "PriceFeed",
    "get_price_feed",
    "RepositionExecutor",
    "ReconciliationService",
    "notifier",
]

_LAZY_EXPORTS = {
    "DlmmHttpClient": ("services.dlmm_client", "DlmmHttpClient"),
    "PriceFeed": ("services.price_feed", "PriceFeed"),
    "get_price_feed": ("services.price_feed", "get_price_feed"),
    "RepositionExecutor": ("services.reposition_executor", "RepositionExecutor"),
    "ReconciliationService": ("services.reconciliation", "ReconciliationService"),
    "notifier": ("services.notifier", "notifier"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
