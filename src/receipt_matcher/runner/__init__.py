"""
CLI runner module.

Provides commands:
- init-config: Write a default config file
- import-transactions: Load bank transactions
- enqueue: Create a search queue item
- tick: Process pending queue items
- status: Queue and hint statistics
- pause/resume: Operator control of queue items
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
