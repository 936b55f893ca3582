from __future__ import annotations

import re
from typing import Any, Callable, Iterable

from ....schemas import SlackUser


_USER_ID_RE = re.compile(r"^[UW][A-Z0-9]{2,}$")


def is_user_id(identifier: str) -> bool:
    """True when `identifier` is a raw Slack user id (U…/W…), not a name."""
    return bool(_USER_ID_RE.match(str(identifier or "").strip()))


def user_from_member(member: dict[str, Any]) -> SlackUser | None:
    """Project a users.list / users.info member onto SlackUser."""
    if not isinstance(member, dict):
        return None
    uid = str(member.get("id") or "").strip()
    if not uid:
        return None
    raw_prof = member.get("profile")
    prof: dict[str, Any] = raw_prof if isinstance(raw_prof, dict) else {}
    return SlackUser(
        id=uid,
        name=str(member.get("name") or "").strip() or uid,
        real_name=(str(member.get("real_name") or prof.get("real_name") or "").strip() or None),
        display_name=(str(prof.get("display_name") or "").strip() or None),
        email=(str(prof.get("email") or "").strip() or None),
        is_bot=bool(member.get("is_bot")),
    )


def user_label(user: SlackUser) -> str:
    """Friendliest available name: display name, then real name, then handle."""
    return user.display_name or user.real_name or user.name


# Field priority for identifier matching: handle, display name, real name.
_MATCH_FIELDS: tuple[Callable[[SlackUser], str | None], ...] = (
    lambda u: u.name,
    lambda u: u.display_name,
    lambda u: u.real_name,
)


def normalize_query(query: str) -> str:
    return str(query or "").strip().removeprefix("@").strip().lower()


def find_user_in_directory(users: Iterable[SlackUser], query: str) -> SlackUser | None:
    """
    Case-insensitive lookup by handle, display name or real name.

    Exact matches are tried before substring matches. Within each pass the
    field priority decides (a handle match beats a display-name match on a
    different user); users sharing the winning field resolve to the first
    one in directory order.
    """
    q = normalize_query(query)
    if not q:
        return None
    directory = list(users)

    for matches in (lambda v: v == q, lambda v: q in v):
        for field in _MATCH_FIELDS:
            for u in directory:
                v = field(u)
                if v and matches(v.lower()):
                    return u
    return None
