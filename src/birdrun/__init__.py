"""
birdrun - Two-stage pseudo-label ensemble orchestration.

Train seeded ensembles, bag their predictions, pseudo-label, repeat.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
