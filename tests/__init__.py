# Dual-PoW explorer test suite
"""
Unit tests for the difficulty core, chain-state tracker, RPC client
and the Flask routes. All daemon access is faked.

Run with: pytest
"""
