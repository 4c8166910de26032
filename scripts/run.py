#!/usr/bin/env python3
"""Run the inboxsync API server (webhook + triggers + scheduler).

Usage:
    python scripts/run.py                  # 0.0.0.0:8000
    python scripts/run.py --port 3000      # Custom port
    INBOXSYNC_SCHEDULER_ENABLED=false python scripts/run.py   # API only
"""

from inboxsync.app import main

if __name__ == "__main__":
    main()
