"""airshed: provincial emission aggregation and upwind trajectory analysis."""

__version__ = "0.1.0"
