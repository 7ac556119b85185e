"""Audit profiles: built-in presets, inheritance resolution and engine config."""

from __future__ import annotations

import copy
import logging
from typing import Any

from perfgate.errors import BaseProfileNotFoundError, ProfileCycleError, ProfileNotFoundError
from perfgate.models import Profile

logger = logging.getLogger(__name__)

DESKTOP_THROTTLING = {"rttMs": 40, "throughputKbps": 10240, "cpuSlowdownMultiplier": 1}
SLOW_3G_THROTTLING = {"rttMs": 150, "throughputKbps": 1638.4, "cpuSlowdownMultiplier": 4}

# Screen emulation per form factor: (width, height, device scale factor)
SCREEN_SIZES = {
    "mobile": (375, 667, 2),
    "desktop": (1350, 940, 1),
}

BUILT_IN_PROFILES = {
    "default": Profile(
        id="default",
        name="Default Desktop",
        settings={
            "formFactor": "desktop",
            "throttling": DESKTOP_THROTTLING,
            "onlyCategories": ["performance"],
        },
    ),
    "desktop": Profile(
        id="desktop",
        name="Desktop Fast",
        settings={
            "formFactor": "desktop",
            "throttling": DESKTOP_THROTTLING,
        },
    ),
    "mobile-slow-3g": Profile(
        id="mobile-slow-3g",
        name="Mobile Slow 3G",
        settings={
            "formFactor": "mobile",
            "throttling": SLOW_3G_THROTTLING,
            "onlyCategories": ["performance"],
        },
    ),
    "ci-minimal": Profile(
        id="ci-minimal",
        name="CI Minimal",
        settings={
            "formFactor": "desktop",
            "throttling": DESKTOP_THROTTLING,
            "onlyCategories": ["performance"],
            "skipAudits": ["screenshot-thumbnails", "final-screenshot"],
        },
    ),
}


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict with override merged into base.

    Nested dicts merge key by key; lists and scalars from override replace the
    base value wholesale.
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ProfileRegistry:
    """Registry of audit profiles with `extends` inheritance.

    Built-in profiles are registered first; custom profiles with the same id
    replace them. The registry never changes after construction, so resolved
    profiles are cached per id.
    """

    def __init__(self, custom_profiles: dict[str, Profile] | None = None):
        self._profiles: dict[str, Profile] = dict(BUILT_IN_PROFILES)
        for profile in (custom_profiles or {}).values():
            if profile.id in self._profiles:
                logger.debug("Custom profile %s overrides an existing profile", profile.id)
            self._profiles[profile.id] = profile
        self._cache: dict[str, Profile] = {}

    def has_profile(self, profile_id: str) -> bool:
        return profile_id in self._profiles

    def list_profiles(self) -> list[Profile]:
        return list(self._profiles.values())

    def get_profile(self, profile_id: str) -> Profile:
        """Return the fully resolved profile (no `extends` left)."""
        if profile_id not in self._profiles:
            raise ProfileNotFoundError(profile_id)
        if profile_id not in self._cache:
            self._cache[profile_id] = self._resolve(profile_id, [])
        return self._cache[profile_id]

    def _resolve(self, profile_id: str, visiting: list[str]) -> Profile:
        if profile_id in visiting:
            raise ProfileCycleError(visiting[visiting.index(profile_id):] + [profile_id])

        profile = self._profiles[profile_id]
        if not profile.extends:
            return profile

        if profile.extends not in self._profiles:
            raise BaseProfileNotFoundError(profile.extends, profile_id)

        base = self._resolve(profile.extends, visiting + [profile_id])
        return Profile(
            id=profile.id,
            name=profile.name or base.name,
            settings=deep_merge(base.settings, profile.settings),
            extends=None,
            auth=profile.auth or base.auth,
        )


def build_engine_config(profile: Profile) -> dict[str, Any]:
    """Build a Lighthouse config object from a resolved profile."""
    settings = profile.settings
    form_factor = settings.get("formFactor", "desktop")
    width, height, scale = SCREEN_SIZES.get(form_factor, SCREEN_SIZES["desktop"])

    base_settings = {
        "maxWaitForFcp": 30000,
        "maxWaitForLoad": 45000,
        "formFactor": form_factor,
        "throttling": DESKTOP_THROTTLING,
        "screenEmulation": {
            "mobile": form_factor == "mobile",
            "width": width,
            "height": height,
            "deviceScaleFactor": scale,
        },
    }
    return {
        "extends": "lighthouse:default",
        "settings": deep_merge(base_settings, settings),
    }
