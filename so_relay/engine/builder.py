"""Turn raw API items into notification candidates."""

from __future__ import annotations

import html
import re
from dataclasses import dataclass

from ..config import WatchedAccount
from .source import RawItem

_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class NotificationCandidate:
    account_id: int
    text: str


def build(account: WatchedAccount, item: RawItem) -> NotificationCandidate:
    """Format ``item`` for ``account``.

    The text doubles as the persistent dedup key, so this rule is frozen:
    changing it would re-notify every account for every unread item.
    """

    text = _clean(item.body)
    title = _clean(item.title or "")
    if title and not text.startswith(title):
        text = f"{title}: {text}" if text else title
    if not text:
        label = _humanize(item.item_type)
        text = f"{label} on post {item.post_id}" if item.post_id is not None else label
    return NotificationCandidate(account_id=account.account_id, text=text)


def _clean(fragment: str) -> str:
    # tags go before entities are decoded so escaped "<" and ">" stay text
    without_tags = html.unescape(_TAG.sub(" ", fragment))
    return _WHITESPACE.sub(" ", without_tags).strip()


def _humanize(item_type: str) -> str:
    words = item_type.replace("_", " ").strip()
    return words[:1].upper() + words[1:] if words else "Notification"


__all__ = ["NotificationCandidate", "build"]
