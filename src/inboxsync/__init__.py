"""inboxsync: Instagram DM inbox synchronization and identity resolution."""

__version__ = "0.1.0"
