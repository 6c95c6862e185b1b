"""
Bot version information.

Semantic versioning: MAJOR.MINOR.PATCH
- MAJOR: Incompatible storage or API changes
- MINOR: Backwards-compatible functionality additions
- PATCH: Backwards-compatible bug fixes
"""

__version__ = "2.0.0"

# Version history
VERSION_HISTORY = {
    "2.0.0": "Relational activity store: per-user totals, group thresholds, reset history and session recovery through Redis",
    "1.2.0": "Configurable report cycle per group, AFK status expiry",
    "1.1.0": "Channel moves no longer split sessions, observer/waiting markers suspend accrual",
    "1.0.0": "Initial version tracking"
}


def get_version() -> str:
    """Get the current bot version string."""
    return __version__
