"""Transactional key-value store replicated with Raft."""

__all__ = ["common", "messages", "persistence", "raft", "state", "handler"]