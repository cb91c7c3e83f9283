"""Integration adapters: SQLite storage, HTTP media and the Telegram transport."""
