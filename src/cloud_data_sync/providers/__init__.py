"""
Storage provider implementations.

Each provider imports its SDK lazily; constructing a backend whose SDK
is not installed raises ImportError.
"""
