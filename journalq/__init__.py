"""
journalq - background job queue for journal entry processing.
"""

__version__ = "0.1.0"
