"""
Session handling for contextkeeper.

- transcript: tail reads of the host's JSONL session logs
- gateway: HTTP client for the host's session registry
- lifecycle: token-threshold rotation policy and controller
"""
