from __future__ import annotations
import os
import re
from dataclasses import dataclass
from dotenv import load_dotenv
import yaml

load_dotenv()

_ENV_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")

DEFAULT_CONFIG_PATHS = ("config/config.yaml", "config/config.example.yaml")


def _env_expand(value: str) -> str:
    # supports ${VAR} interpolation for YAML strings
    def repl(m):
        return os.getenv(m.group(1), "")
    return _ENV_PATTERN.sub(repl, value)


def load_config(path: str | None = None) -> dict:
    if path is None:
        path = next((p for p in DEFAULT_CONFIG_PATHS if os.path.exists(p)), DEFAULT_CONFIG_PATHS[-1])
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    # recursively expand env vars
    def walk(obj):
        if isinstance(obj, dict):
            return {k: walk(v) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(x) for x in obj]
        if isinstance(obj, str):
            return _env_expand(obj)
        return obj
    return walk(cfg)


def _int_or_none(value) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


@dataclass(frozen=True)
class GitLabSettings:
    api: str
    token: str = ""
    group_id: int | None = None
    timeout_ms: int = 10_000
    retry_max_attempts: int = 3
    retry_backoff_ms: int = 500
    per_page: int = 100

    @property
    def graphql_url(self) -> str:
        """GraphQL endpoint derived from the REST base URL."""
        api = self.api.rstrip("/")
        if "/api/v4" in api:
            return api.replace("/api/v4", "/api/graphql")
        return api + "/graphql"

    @classmethod
    def from_config(cls, config: dict) -> "GitLabSettings":
        gl = config.get("gitlab") or {}
        api = gl.get("api") or os.getenv("GITLAB_API", "")
        if not api:
            raise RuntimeError("Missing gitlab.api (or GITLAB_API)")
        return cls(
            api=api.rstrip("/"),
            token=gl.get("token") or os.getenv("GITLAB_TOKEN", ""),
            group_id=_int_or_none(gl.get("group_id") or os.getenv("GITLAB_GROUP_ID")),
            timeout_ms=int(gl.get("timeout_ms", 10_000)),
            retry_max_attempts=max(1, int(gl.get("retry_max_attempts", 3))),
            retry_backoff_ms=int(gl.get("retry_backoff_ms", 500)),
            per_page=int(gl.get("per_page", 100)),
        )


@dataclass(frozen=True)
class JobSettings:
    workers: int = 2

    @classmethod
    def from_config(cls, config: dict) -> "JobSettings":
        jobs = config.get("jobs") or {}
        return cls(workers=max(1, int(jobs.get("workers") or os.getenv("SYNC_WORKERS", 2))))
