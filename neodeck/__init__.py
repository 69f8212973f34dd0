"""
neodeck: terminal client for Pulumi Neo agent tasks.

Features:
- Task list and transcripts with adaptive polling (fast while Neo is
  answering, slow while a task is only being viewed)
- Pulumi CLI commands run on a pseudo-terminal with live, deduplicated output
- A tick-driven update loop that never blocks on network or process I/O
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
