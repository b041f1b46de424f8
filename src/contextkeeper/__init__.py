"""
contextkeeper - external session lifecycle controller for long-running agents.

- session: transcript reading, gateway client, token-based rotation
- memory:  checkpoint extraction, day logs, memory index, bootstrap disclosure
- cli:     typer entry points for the externally-triggered batch runs
"""

__version__ = "0.1.0"
