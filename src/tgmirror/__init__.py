"""tgmirror: mirror a Telegram channel to a Mastodon account."""

__version__ = "0.1.0"
