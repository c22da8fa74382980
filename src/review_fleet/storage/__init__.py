"""Optional persistence of session events."""

from .journal import EventJournal, JournalEvent, JournalUnavailableError

__all__ = ["EventJournal", "JournalEvent", "JournalUnavailableError"]
