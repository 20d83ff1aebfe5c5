"""Reconcile remote meeting documents into a folder of editable Markdown notes."""

__version__ = "0.4.0"
