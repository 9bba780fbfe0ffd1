"""Integration adapters: Telegram source, Mastodon target, SQLite storage."""
