"""
Ledger implementations for the gasless relay SDK.

The Ledger owns nonce state and executes forward requests. ``Web3Ledger``
talks to a deployed MinimalForwarder; ``InMemoryLedger`` is a
dependency-free reference used in tests and local development.
"""
from .base import Ledger
from .memory import InMemoryLedger, TargetHandler
from .web3_ledger import Web3Ledger, validate_rpc_url

__all__ = ['Ledger', 'InMemoryLedger', 'TargetHandler', 'Web3Ledger', 'validate_rpc_url']
