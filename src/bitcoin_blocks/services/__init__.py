# src/bitcoin_blocks/services/__init__.py
"""Business logic services for the Bitcoin Blocks game engine.

Modules are imported directly (``bitcoin_blocks.services.rounds`` and so on)
so that ``core`` can depend on the error taxonomy without import cycles.
"""
