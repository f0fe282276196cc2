# core/__init__.py
# Shared infrastructure: errors, token usage, the model transport and the SQLite store.
