from __future__ import annotations

from typing import Iterable, Mapping

from services.message import CanonicalMessage, Platform

# Display-name fragments of accounts the bridge (or a prior bridge) posts as.
# Matched as lower-case substrings, so entries must not occur in human names.
DEFAULT_FRAGMENTS: tuple[str, ...] = (
    "cometchat bot",
    "cometchat-bot",
    "telegram bot",
    "discord bot",
)


class LoopGuard:
    """
    Drops messages that the bridge must not forward.

    This is a heuristic: a message is rejected if its platform marks the
    author as a bot, if the author's display name contains a known bridge
    identity fragment, or if the author id is a configured posting identity.
    """

    def __init__(
        self,
        name_fragments: Iterable[str] | None = None,
        bot_user_ids: Mapping[Platform, Iterable[str]] | None = None,
    ):
        fragments = DEFAULT_FRAGMENTS if name_fragments is None else name_fragments
        self._fragments: tuple[str, ...] = tuple(f.lower() for f in fragments if f)
        self._bot_ids: frozenset[tuple[Platform, str]] = frozenset(
            (Platform(platform), str(uid))
            for platform, uids in (bot_user_ids or {}).items()
            for uid in uids
        )

    def check(self, msg: CanonicalMessage) -> str | None:
        """Return a short rejection reason, or ``None`` if *msg* may be routed."""
        if msg.author.is_bot:
            return "author is a bot"
        if (msg.source, msg.author.id) in self._bot_ids:
            return f"author id {msg.author.id} is a bridge identity"
        name = msg.author.name.lower()
        for fragment in self._fragments:
            if fragment in name:
                return f"author name matches '{fragment}'"
        return None

    def is_routable(self, msg: CanonicalMessage) -> bool:
        return self.check(msg) is None
