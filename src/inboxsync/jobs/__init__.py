from inboxsync.jobs.scheduler import SyncScheduler

__all__ = ["SyncScheduler"]
