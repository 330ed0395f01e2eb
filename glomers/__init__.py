"""Nodes speaking the Maelstrom JSON protocol: echo, unique ids, broadcast, counter, log and key-value."""

__version__ = "0.1.0"