from __future__ import annotations

import pytest

from pmsync.sync.time_spent import parse_delta_seconds


@pytest.mark.parametrize(
    "body, expected",
    [
        ("added 2h 30m of time spent", 9000),
        ("subtracted 1d of time spent", -86400),
        ("added 1d 2h 3m 4s of time spent at 2024-05-01", 86400 + 7200 + 180 + 4),
        ("Added 45M of time spent", 2700),
        ("  added 10s of time spent  ", 10),
        ("added 3h30m of time spent", 12600),
    ],
)
def test_parses_signed_seconds(body, expected):
    assert parse_delta_seconds(body) == expected


@pytest.mark.parametrize(
    "body",
    [
        None,
        "",
        "commented on this issue",
        "added 0m of time spent",
        "added some of time spent",
        "changed time estimate to 2h",
        "please added 2h of time spent",
    ],
)
def test_no_signal(body):
    assert parse_delta_seconds(body) is None
