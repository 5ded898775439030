"""quarnetgof package."""

__all__ = [
    "networks",
    "quartets",
    "quarnet",
    "outliers",
    "coalescent",
    "correction",
    "gof",
    "branch_lengths",
    "validation",
    "cli",
]
