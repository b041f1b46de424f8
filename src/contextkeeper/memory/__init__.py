"""
Memory handling for contextkeeper.

- extraction:     transcript messages -> ActiveContext snapshot and day-log entry
- markdown_store: reads/writes the agent's <workspace>/memory/ directory
- checkpoint:     the per-agent checkpoint run
- indexer:        INDEX.md generation and bulk regeneration
- disclosure:     index-based memory disclosure at bootstrap
- summary:        structured end-of-session summaries
"""
