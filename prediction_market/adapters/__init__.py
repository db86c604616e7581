"""Integration adapters.

Adapters connect the synchronous core to external chat platforms.
"""
