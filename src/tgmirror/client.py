"""Client factories for tgmirror.

The Telegram client is created here but its lifecycle (connect, authorize,
disconnect) is driven by the source adapter so it is obvious when the
session is opened and when it ends.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from telethon import TelegramClient

from tgmirror.adapters.mastodon_target import MastodonTarget


def build_client() -> TelegramClient:
    """Create a Telethon client from environment variables.

    We read API_ID/API_HASH via python-dotenv to keep secrets out of the repo.
    The session name defaults to "tgmirror" to create a local .session file.
    """

    load_dotenv()

    api_id = os.getenv("API_ID")
    api_hash = os.getenv("API_HASH")
    session_name = os.getenv("SESSION_NAME", "tgmirror")

    # Fail fast on missing credentials to avoid an ambiguous login prompt.
    if not api_id or not api_hash:
        raise RuntimeError("Missing API_ID or API_HASH in environment")

    logging.getLogger(__name__).info("Initializing Telegram client")

    return TelegramClient(session_name, int(api_id), api_hash)


def build_target(instance: str) -> MastodonTarget:
    """Create the Mastodon target from MASTODON_ACCESS_TOKEN."""

    load_dotenv()

    access_token = os.getenv("MASTODON_ACCESS_TOKEN")
    if not access_token:
        raise RuntimeError("Missing MASTODON_ACCESS_TOKEN in environment")

    logging.getLogger(__name__).info("Initializing Mastodon client for %s", instance)

    return MastodonTarget(instance, access_token)
