"""core/session — Pure model of a live mix session.

This package contains zero I/O, zero network calls, zero filesystem access.
Types and the compiler are deterministic functions of their inputs.

Persistence (SQLite) and fan-out to connected clients live in
ingestion/session_store.py and ingestion/broker.py.
"""
