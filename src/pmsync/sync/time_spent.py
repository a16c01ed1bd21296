from __future__ import annotations
import re

ADD_PATTERN = re.compile(r"^added (.+) of time spent", re.IGNORECASE)
SUB_PATTERN = re.compile(r"^subtracted (.+) of time spent", re.IGNORECASE)
TOKEN = re.compile(r"(\d+)\s*([dhms])", re.IGNORECASE)

UNIT_SECONDS = {"d": 86400, "h": 3600, "m": 60, "s": 1}


def parse_delta_seconds(body: str | None) -> int | None:
    """Signed seconds from a GitLab system note such as ``added 1h 30m of time spent``.

    Anything that is not a time-spent note, or that sums to zero, gives None.
    """
    if not body:
        return None
    text = body.strip()
    m = ADD_PATTERN.match(text)
    negative = False
    if not m:
        m = SUB_PATTERN.match(text)
        negative = True
    if not m:
        return None

    seconds = sum(int(value) * UNIT_SECONDS[unit.lower()] for value, unit in TOKEN.findall(m.group(1)))
    if seconds == 0:
        return None
    return -seconds if negative else seconds
