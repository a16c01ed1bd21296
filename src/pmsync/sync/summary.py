from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterable, List


@dataclass
class SyncSummary:
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    pages: int = 0
    unpriced: int = 0
    duration_ms: int = 0
    missing_usernames: List[str] = field(default_factory=list)

    def add_missing_usernames(self, usernames: Iterable[str | None]) -> "SyncSummary":
        for username in usernames:
            if username and username.strip() and username not in self.missing_usernames:
                self.missing_usernames.append(username)
        return self

    def merge(self, other: "SyncSummary") -> "SyncSummary":
        self.fetched += other.fetched
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped
        self.pages += other.pages
        self.unpriced += other.unpriced
        self.add_missing_usernames(other.missing_usernames)
        return self

    def as_dict(self) -> dict:
        return {
            "fetched": self.fetched,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "pages": self.pages,
            "unpriced": self.unpriced,
            "duration_ms": self.duration_ms,
            "missing_usernames": list(self.missing_usernames),
        }


class ProgressListener:
    """Receives progress of multi-repository runs. Default methods do nothing."""

    def on_start(self, total_repos: int) -> None:
        pass

    def on_repo_start(self, gitlab_repo_id: int | None) -> None:
        pass

    def on_repo_done(self, processed_repos: int, gitlab_repo_id: int | None, summary: SyncSummary) -> None:
        pass
