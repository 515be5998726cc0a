"""
Feature Flags Configuration

Centralized feature flag management for the backend.
All feature flags should be loaded from environment variables.
"""
from typing import Optional

from prediction_system.config.settings import get_bool_env


class FeatureFlags:
    """
    Feature flags for the application.

    To add a new feature flag:
    1. Add it here as a class property
    2. Load it from environment variable
    3. Use it in your code
    """

    # Chat-bot compatible GET routes under /prediction
    FEATURE_LEGACY_ROUTES: bool = get_bool_env('FEATURE_LEGACY_ROUTES', True)

    # Migration window: anonymous legacy calls act as the channel's own account
    LEGACY_TRUST_CHANNEL_OWNER: bool = get_bool_env('LEGACY_TRUST_CHANNEL_OWNER', True)

    # Live event stream for viewers
    FEATURE_WEBSOCKETS: bool = get_bool_env('FEATURE_WEBSOCKETS', True)

    @classmethod
    def is_enabled(cls, flag_name: str) -> bool:
        """Check if a feature flag is enabled by name."""
        return bool(getattr(cls, flag_name, False))

    @classmethod
    def get_all_flags(cls) -> dict:
        """Get all feature flags and their current values."""
        return {
            key: value
            for key, value in cls.__dict__.items()
            if key.isupper() and isinstance(value, bool)
        }

    @classmethod
    def set_flag(cls, flag_name: str, value: bool) -> Optional[bool]:
        """Override a flag at runtime (tests, admin tooling). Returns the old value."""
        if not hasattr(cls, flag_name):
            return None
        previous = getattr(cls, flag_name)
        setattr(cls, flag_name, value)
        return previous


feature_flags = FeatureFlags()
