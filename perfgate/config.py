"""Run configuration: TOML discovery/loading and validation into RunConfig."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from perfgate.assertions import AssertionConfig
from perfgate.baseline import VALID_MATCH_KEYS, BaselineConfig
from perfgate.errors import ConfigError
from perfgate.models import AuthConfig, Cookie, DeltaRules, Profile, Target, Threshold

CONFIG_FILENAMES = ["perfgate.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "perfgate",
]

DEFAULT_PROFILE = "default"
DEFAULT_CONCURRENCY = 1
DEFAULT_MAX_RETRIES = 2
DEFAULT_TIMEOUT_MS = 60000
DEFAULT_RUNS_PER_TASK = 1
DEFAULT_OUTPUT_DIR = "./perf-results"
VALID_OUTPUT_FORMATS = ("cli", "json", "csv")
VALID_SAME_SITE = ("Strict", "Lax", "None")


@dataclass(frozen=True)
class OutputConfig:
    dir: str = DEFAULT_OUTPUT_DIR
    formats: list[str] = field(default_factory=lambda: ["cli"])
    include_raw: bool = False


@dataclass(frozen=True)
class RunConfig:
    targets: list[Target]
    profiles: dict[str, Profile] = field(default_factory=dict)
    default_profile: str = DEFAULT_PROFILE
    concurrency: int = DEFAULT_CONCURRENCY
    max_retries: int = DEFAULT_MAX_RETRIES
    timeout: int = DEFAULT_TIMEOUT_MS
    runs_per_task: int = DEFAULT_RUNS_PER_TASK
    pool_size: int | None = None
    headless: bool = True
    assertions: AssertionConfig | None = None
    baseline: BaselineConfig | None = None
    output: OutputConfig = field(default_factory=OutputConfig)
    base_dir: Path | None = None

    @property
    def effective_pool_size(self) -> int:
        return self.pool_size if self.pool_size is not None else self.concurrency


# ---------------------------------------------------------------------------
# Discovery & loading
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Malformed config file {config_path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {config_path}: {exc}") from exc


def apply_overrides(data: dict, overrides: dict[str, Any]) -> dict:
    """Overlay non-None CLI values onto the raw config dict."""
    merged = dict(data)
    for key, value in overrides.items():
        if value is not None:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _is_absolute_url(url: Any) -> bool:
    if not isinstance(url, str):
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _positive_int(data: dict, key: str, default: int, problems: list[str], minimum: int = 1) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        qualifier = "a positive" if minimum == 1 else "a non-negative"
        problems.append(f"{key}: must be {qualifier} integer (got {value!r})")
        return default
    return value


def parse_auth(data: Any, where: str, problems: list[str]) -> AuthConfig | None:
    if data is None:
        return None
    if not isinstance(data, dict):
        problems.append(f"{where}.auth: must be a table")
        return None

    headers = data.get("headers", {})
    if not isinstance(headers, dict) or not all(isinstance(v, str) for v in headers.values()):
        problems.append(f"{where}.auth.headers: must map header names to strings")
        headers = {}

    raw_cookies = data.get("cookies", [])
    if not isinstance(raw_cookies, list):
        problems.append(f"{where}.auth.cookies: must be an array of tables")
        raw_cookies = []

    cookies = []
    for position, raw in enumerate(raw_cookies):
        if not isinstance(raw, dict) or not raw.get("name") or not raw.get("value"):
            problems.append(f"{where}.auth.cookies[{position}]: 'name' and 'value' are required")
            continue
        same_site = raw.get("same_site")
        if same_site is not None and same_site not in VALID_SAME_SITE:
            problems.append(f"{where}.auth.cookies[{position}].same_site: must be one of {', '.join(VALID_SAME_SITE)}")
            same_site = None
        cookies.append(Cookie(
            name=raw["name"],
            value=raw["value"],
            domain=raw.get("domain"),
            path=raw.get("path", "/"),
            secure=raw.get("secure", True),
            http_only=raw.get("http_only", False),
            same_site=same_site,
            expires=raw.get("expires"),
        ))
    return AuthConfig(headers=dict(headers), cookies=cookies)


def parse_target(data: Any, position: int, problems: list[str]) -> Target | None:
    where = f"targets[{position}]"
    if not isinstance(data, dict):
        problems.append(f"{where}: must be a table")
        return None
    target_id = data.get("id")
    if not isinstance(target_id, str) or not target_id:
        problems.append(f"{where}.id: is required")
        return None
    url = data.get("url")
    if not _is_absolute_url(url):
        problems.append(f"{where}.url: must be a valid absolute URL (got {url!r})")
        return None
    tags = data.get("tags", [])
    if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
        problems.append(f"{where}.tags: must be a list of strings")
        tags = []
    return Target(
        id=target_id,
        url=url,
        name=data.get("name"),
        tags=list(tags),
        profile=data.get("profile"),
        auth=parse_auth(data.get("auth"), where, problems),
    )


def parse_profile(key: str, data: Any, problems: list[str]) -> Profile | None:
    where = f"profiles.{key}"
    if not isinstance(data, dict):
        problems.append(f"{where}: must be a table")
        return None
    settings = data.get("settings", {})
    if not isinstance(settings, dict):
        problems.append(f"{where}.settings: must be a table")
        settings = {}
    return Profile(
        id=data.get("id", key),
        name=data.get("name"),
        settings=settings,
        extends=data.get("extends"),
        auth=parse_auth(data.get("auth"), where, problems),
    )


def parse_thresholds(data: Any, where: str, problems: list[str]) -> dict[str, Threshold]:
    if not isinstance(data, dict):
        problems.append(f"{where}: must be a table of metric thresholds")
        return {}
    thresholds = {}
    for metric, bounds in data.items():
        if not isinstance(bounds, dict) or not set(bounds) <= {"min", "max"}:
            problems.append(f"{where}.{metric}: must contain only 'min' and/or 'max'")
            continue
        if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in bounds.values()):
            problems.append(f"{where}.{metric}: thresholds must be numbers")
            continue
        thresholds[metric] = Threshold(min=bounds.get("min"), max=bounds.get("max"))
    return thresholds


def _scoped_thresholds(data: Any, where: str, problems: list[str]) -> dict[str, dict[str, Threshold]]:
    if not isinstance(data, dict):
        problems.append(f"{where}: must be a table keyed by name")
        return {}
    return {key: parse_thresholds(values, f"{where}.{key}", problems) for key, values in data.items()}


def parse_assertions(data: Any, problems: list[str]) -> AssertionConfig | None:
    if data is None:
        return None
    if not isinstance(data, dict):
        problems.append("assertions: must be a table")
        return None

    delta = None
    if "delta" in data:
        raw_delta = data["delta"]
        if isinstance(raw_delta, dict) and set(raw_delta) <= {"delta_max_pct", "delta_min", "delta_max_ms"}:
            delta = DeltaRules(**raw_delta)
        else:
            problems.append("assertions.delta: allowed keys are delta_max_pct, delta_min, delta_max_ms")

    return AssertionConfig(
        metrics=parse_thresholds(data.get("metrics", {}), "assertions.metrics", problems),
        delta=delta,
        tags=_scoped_thresholds(data.get("tags", {}), "assertions.tags", problems),
        targets=_scoped_thresholds(data.get("targets", {}), "assertions.targets", problems),
    )


def parse_baseline_config(data: Any, problems: list[str]) -> BaselineConfig | None:
    if data is None:
        return None
    if not isinstance(data, dict) or not (data.get("file") or data.get("data")):
        problems.append("baseline: baseline.file or baseline.data is required")
        return None
    match_by = data.get("match_by", "id")
    if match_by not in VALID_MATCH_KEYS:
        problems.append(f"baseline.match_by: must be one of {', '.join(VALID_MATCH_KEYS)}")
        match_by = "id"
    return BaselineConfig(file=data.get("file"), data=data.get("data"), match_by=match_by)


def parse_output(data: Any, problems: list[str]) -> OutputConfig:
    if data is None:
        return OutputConfig()
    if not isinstance(data, dict):
        problems.append("output: must be a table")
        return OutputConfig()
    formats = data.get("formats", ["cli"])
    if not isinstance(formats, list):
        problems.append("output.formats: must be an array of format names")
        formats = ["cli"]
    invalid = [fmt for fmt in formats if fmt not in VALID_OUTPUT_FORMATS]
    if invalid:
        problems.append(f"output.formats: unsupported format(s) {', '.join(map(str, invalid))}")
        formats = [fmt for fmt in formats if fmt in VALID_OUTPUT_FORMATS]
    return OutputConfig(
        dir=data.get("dir", DEFAULT_OUTPUT_DIR),
        formats=list(formats),
        include_raw=bool(data.get("include_raw", False)),
    )


def build_run_config(data: dict, base_dir: Path | None = None) -> RunConfig:
    """Validate a raw config dict. Raises ConfigError listing every problem found."""
    problems: list[str] = []

    raw_targets = data.get("targets")
    if not isinstance(raw_targets, list) or not raw_targets:
        problems.append("targets: at least one target is required")
        raw_targets = []
    targets = [t for position, raw in enumerate(raw_targets) if (t := parse_target(raw, position, problems))]

    seen_ids: set[str] = set()
    for target in targets:
        if target.id in seen_ids:
            problems.append(f"targets: duplicate target id {target.id!r}")
        seen_ids.add(target.id)

    raw_profiles = data.get("profiles", {})
    if not isinstance(raw_profiles, dict):
        problems.append("profiles: must be a table")
        raw_profiles = {}
    profiles = {key: p for key, raw in raw_profiles.items() if (p := parse_profile(key, raw, problems))}

    pool_size = data.get("pool_size")
    if pool_size is not None:
        pool_size = _positive_int(data, "pool_size", 1, problems)

    run_config = RunConfig(
        targets=targets,
        profiles=profiles,
        default_profile=data.get("default_profile", DEFAULT_PROFILE),
        concurrency=_positive_int(data, "concurrency", DEFAULT_CONCURRENCY, problems),
        max_retries=_positive_int(data, "max_retries", DEFAULT_MAX_RETRIES, problems, minimum=0),
        timeout=_positive_int(data, "timeout", DEFAULT_TIMEOUT_MS, problems),
        runs_per_task=_positive_int(data, "runs_per_task", DEFAULT_RUNS_PER_TASK, problems),
        pool_size=pool_size,
        headless=bool(data.get("headless", True)),
        assertions=parse_assertions(data.get("assertions"), problems),
        baseline=parse_baseline_config(data.get("baseline"), problems),
        output=parse_output(data.get("output"), problems),
        base_dir=base_dir,
    )

    if problems:
        raise ConfigError("Configuration validation failed", problems)
    return run_config
