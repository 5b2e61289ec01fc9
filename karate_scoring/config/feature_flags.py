"""
Feature Flags Configuration

Centralized feature flag management for the scoring engine.
All feature flags are loaded from environment variables.
"""
import os


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


class FeatureFlags:
    """
    Feature flags for the engine.

    Flags are read at call time by the services, so tests may flip them on
    the class directly.
    """

    # Duplicate finalize raises AlreadyFinalizedError instead of returning
    # the stored outcome
    FEATURE_STRICT_FINALIZE: bool = get_bool_env('FEATURE_STRICT_FINALIZE', False)

    # Single-participant matches are completed when the round is created
    FEATURE_AUTO_RESOLVE_BYES: bool = get_bool_env('FEATURE_AUTO_RESOLVE_BYES', True)

    # Reject kata scores from judges outside the round's roster
    FEATURE_ENFORCE_JUDGE_ROSTER: bool = get_bool_env('FEATURE_ENFORCE_JUDGE_ROSTER', True)

    @classmethod
    def get_all_flags(cls) -> dict:
        """Get all feature flags as a dictionary."""
        return {
            key: value
            for key, value in cls.__dict__.items()
            if not key.startswith('_') and isinstance(value, bool)
        }


# Singleton instance for easy importing
feature_flags = FeatureFlags()
