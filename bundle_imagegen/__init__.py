"""Bundle Image Generator - container image builds from source bundles.

This package downloads content-addressed source bundles, turns them into
build contexts, drives the container runtime to build and publish images,
and garbage-collects the results.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
