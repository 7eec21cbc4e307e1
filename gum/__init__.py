"""
gum - a local index of git projects and frequently used directories.

Base install provides the SQLite store, frecency ranking, the legacy JSON
cache migration and the ``gum`` command.
"""

__version__ = "0.1.0"


def __getattr__(name: str):
    """Lazy imports so ``import gum`` stays cheap for shell hooks."""
    _public = {
        "GumConfig": "gum.config",
        "Database": "gum.database",
        "DatabaseCache": "gum.cache",
        "FileCache": "gum.cache",
        "Migrator": "gum.migration",
        "IntegrityChecker": "gum.integrity",
    }
    if name in _public:
        import importlib
        module = importlib.import_module(_public[name])
        return getattr(module, name)
    raise AttributeError(f"module 'gum' has no attribute {name!r}")


__all__ = [
    "__version__",
]
