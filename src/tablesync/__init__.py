"""tablesync - Offline-first bidirectional table synchronization."""
