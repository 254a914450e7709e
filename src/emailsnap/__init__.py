"""
EmailSnap

A work-mail watcher that polls a mailbox via IMAPS, classifies incoming
messages with ordered rules (optionally arbitrated by an LLM), groups them
into projects and raises desktop notifications for new mail.
"""

__version__ = "1.0.0"
__app_name__ = "EmailSnap"
