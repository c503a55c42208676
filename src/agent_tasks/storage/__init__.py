"""SQLite storage helpers shared by the task and question-bank repositories."""
