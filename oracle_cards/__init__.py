# oracle_cards/__init__.py
# Local-first storage and sync core for the oracle card app.
__version__ = "0.1.0"
