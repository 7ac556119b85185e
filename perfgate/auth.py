"""Authentication material: merging, ${VAR} resolution and header conversion."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import replace

from perfgate.errors import AuthResolutionError
from perfgate.models import AuthConfig, Cookie

ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def merge_auth(profile_auth: AuthConfig | None, target_auth: AuthConfig | None) -> AuthConfig | None:
    """Merge profile- and target-level auth.

    Target headers win on key collisions; cookies are concatenated with the
    target's after the profile's.
    """
    if profile_auth is None and target_auth is None:
        return None
    if profile_auth is None:
        return target_auth
    if target_auth is None:
        return profile_auth
    return AuthConfig(
        headers={**profile_auth.headers, **target_auth.headers},
        cookies=[*profile_auth.cookies, *target_auth.cookies],
    )


def find_env_references(value: str) -> list[str]:
    return ENV_VAR_PATTERN.findall(value)


def missing_env_vars(auth: AuthConfig, environ: Mapping[str, str] | None = None) -> list[str]:
    """Return the referenced environment variables that are not set (deduplicated, in order)."""
    environ = os.environ if environ is None else environ
    values = list(auth.headers.values())
    for cookie in auth.cookies:
        values.extend((cookie.name, cookie.value))

    missing: list[str] = []
    for value in values:
        for var_name in find_env_references(value):
            if var_name not in environ and var_name not in missing:
                missing.append(var_name)
    return missing


def resolve_env_vars(value: str, environ: Mapping[str, str] | None = None) -> str:
    environ = os.environ if environ is None else environ

    def substitute(match: re.Match) -> str:
        var_name = match.group(1)
        if var_name not in environ:
            raise AuthResolutionError([var_name])
        return environ[var_name]

    return ENV_VAR_PATTERN.sub(substitute, value)


def resolve_auth(auth: AuthConfig, environ: Mapping[str, str] | None = None) -> AuthConfig:
    """Substitute every ${VAR} reference. Fails closed on any undefined variable."""
    missing = missing_env_vars(auth, environ)
    if missing:
        raise AuthResolutionError(missing)
    return AuthConfig(
        headers={key: resolve_env_vars(value, environ) for key, value in auth.headers.items()},
        cookies=[
            replace(cookie, name=resolve_env_vars(cookie.name, environ), value=resolve_env_vars(cookie.value, environ))
            for cookie in auth.cookies
        ],
    )


def cookie_header(cookies: list[Cookie]) -> str:
    return "; ".join(f"{cookie.name}={cookie.value}" for cookie in cookies)


def auth_to_headers(auth: AuthConfig) -> dict[str, str]:
    """Convert auth to extra request headers; cookies are folded into `Cookie`."""
    headers = dict(auth.headers)
    if auth.cookies:
        existing = headers.pop("Cookie", None) or headers.pop("cookie", None)
        new_cookies = cookie_header(auth.cookies)
        headers["Cookie"] = f"{existing}; {new_cookies}" if existing else new_cookies
    return headers
