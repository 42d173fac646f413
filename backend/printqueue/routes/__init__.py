from importlib import import_module

modules = [
    'orders',
    'files',
    'batches',
    'audit',
    'system',
    'clubs',
    'users',
]

for m in modules:
    import_module(f'.{m}', __name__)

__all__ = modules
