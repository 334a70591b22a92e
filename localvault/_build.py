"""
Build-time settings, rewritten by the release tooling for each distribution.
Nothing here is read from the environment.
"""

BUILD_MODE = "production"
