"""stockcart: inventory-aware cart, checkout and restock watcher."""

__version__ = "0.1.0"
